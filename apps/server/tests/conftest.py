"""
Relief API - test configuration and fixtures.

Each test gets its own SQLite file under ``tmp_path`` and a storage directory
next to it. AI and email are switched off unless a test wires them up.
"""
from datetime import datetime

import pytest

from relifex import create_app
from relifex.config import Settings
from relifex.db import db
from relifex.ledger import generate_wallet_address
from relifex.models import NGO, Disaster, Merchant, Profile


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'relifex.db'}",
        storage_dir=tmp_path / "storage",
        offline_queue_path=tmp_path / "queue.json",
        ai_enabled=False,
        ai_api_key=None,
        resend_api_key=None,
        notification_recipients=[],
        log_level="WARNING",
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config["TESTING"] = True
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _headers(role: str, user: str) -> dict:
    return {"X-Relifex-Role": role, "X-Relifex-User": user}


@pytest.fixture
def admin():
    return _headers("admin", "admin-1")


@pytest.fixture
def ngo_user():
    return _headers("ngo", "ngo-user-1")


@pytest.fixture
def merchant_user():
    return _headers("merchant", "merchant-user-1")


@pytest.fixture
def fresh(app):
    """Re-read a row after a request has changed it."""
    def _fresh(model, ident):
        db.session.expire_all()
        return db.session.get(model, ident)
    return _fresh


@pytest.fixture
def make_disaster(app):
    def _make(name="Assam Floods", total=100000.0, limit=15000.0, status="active"):
        d = Disaster(
            name=name,
            affected_states=["Assam"],
            total_tokens_allocated=total,
            spending_limit_per_user=limit,
            status=status,
        )
        db.session.add(d)
        db.session.commit()
        return d
    return _make


@pytest.fixture
def make_ngo(app):
    def _make(status="verified", balance=0.0, name="Helping Hands"):
        ngo = NGO(
            ngo_name=name,
            legal_registration_number="REG-001",
            contact_email="ops@helpinghands.org",
            contact_phone="9876500000",
            office_address="Guwahati",
            status=status,
            wallet_address=generate_wallet_address(),
            wallet_balance=balance,
        )
        db.session.add(ngo)
        db.session.commit()
        return ngo
    return _make


@pytest.fixture
def make_citizen(app):
    def _make(name="Asha Devi", last4="1234", mobile="9876543210", balance=0.0):
        p = Profile(
            full_name=name,
            aadhaar_last_four=last4,
            mobile=mobile,
            role="citizen",
            wallet_address=generate_wallet_address(),
            wallet_balance=balance,
        )
        db.session.add(p)
        db.session.commit()
        return p
    return _make


@pytest.fixture
def make_merchant(app):
    def _make(aadhaar="555566667777", mobile="9000000001", active=True, shop="Ration Store"):
        m = Merchant(
            full_name="Ravi Kumar",
            mobile=mobile,
            aadhaar_number=aadhaar,
            date_of_birth="1980-01-01",
            shop_name=shop,
            shop_address="Main Road, Dibrugarh",
            stock_categories=["food"],
            is_active=active,
            activation_time=datetime.utcnow() if active else None,
            wallet_address=generate_wallet_address() if active else None,
        )
        db.session.add(m)
        db.session.commit()
        return m
    return _make
