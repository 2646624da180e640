"""Disasters, NGOs, merchants and citizens over HTTP."""
from relifex.models import NGO, AuditLog, Disaster, DuplicateClaim, Merchant, Profile


def test_health_and_ping(client):
    assert client.get("/health").get_json() == {"status": "ok"}
    assert client.get("/api/ping").get_json() == {"ok": True}


def test_create_disaster_requires_admin(client, ngo_user):
    resp = client.post("/api/disasters", json={"name": "Cyclone", "affected_states": ["Odisha"]}, headers=ngo_user)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "forbidden"


def test_disaster_lifecycle(client, admin, fresh):
    resp = client.post("/api/disasters", json={
        "name": "Cyclone Dana",
        "affected_states": ["Odisha", "West Bengal"],
        "total_tokens": 50000,
    }, headers=admin)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["status"] == "active"
    assert body["spending_limit_per_user"] == 15000.0
    assert body["tokens_remaining"] == 50000.0
    disaster_id = body["id"]

    resp = client.post(f"/api/disasters/{disaster_id}/allocate", json={"amount": 10000}, headers=admin)
    assert resp.get_json()["total_tokens_allocated"] == 60000.0

    resp = client.post(f"/api/disasters/{disaster_id}/status", json={"status": "frozen"}, headers=admin)
    assert resp.get_json()["status"] == "frozen"

    resp = client.patch(f"/api/disasters/{disaster_id}", json={"spending_limit": 8000}, headers=admin)
    assert resp.get_json()["spending_limit_per_user"] == 8000.0

    detail = client.get(f"/api/disasters/{disaster_id}").get_json()
    assert detail["beneficiary_count"] == 0 and detail["transaction_volume"] == 0.0
    assert [d["id"] for d in client.get("/api/disasters?status=frozen").get_json()] == [disaster_id]

    assert client.delete(f"/api/disasters/{disaster_id}", headers=admin).status_code == 200
    assert fresh(Disaster, disaster_id) is None
    assert client.get(f"/api/disasters/{disaster_id}").status_code == 404


def test_disaster_validation(client, admin):
    resp = client.post("/api/disasters", json={"name": "X", "affected_states": []}, headers=admin)
    assert resp.status_code == 400
    resp = client.post("/api/disasters", json={"affected_states": ["Kerala"]}, headers=admin)
    assert resp.status_code == 400
    assert resp.get_json()["details"]["missing"] == ["name"]


def test_non_string_values_are_coerced_not_crashed_on(client, admin):
    resp = client.post("/api/disasters", json={"name": 2026, "affected_states": ["Kerala"]}, headers=admin)
    assert resp.status_code == 201
    disaster = resp.get_json()
    assert disaster["name"] == "2026"

    resp = client.patch(f"/api/disasters/{disaster['id']}", json={"name": None}, headers=admin)
    assert resp.status_code == 400
    resp = client.patch(f"/api/disasters/{disaster['id']}", json={"name": 7}, headers=admin)
    assert resp.get_json()["name"] == "7"

    resp = client.post("/api/ngos", json={
        "ngo_name": "Seva Trust",
        "legal_registration_number": "MH/123",
        "contact_email": 12345,
        "contact_phone": "9800000000",
        "office_address": "Pune",
    })
    assert resp.status_code == 400


def test_ngo_registration_and_review(client, admin, fresh):
    resp = client.post("/api/ngos", json={
        "ngo_name": "Seva Trust",
        "legal_registration_number": "MH/123",
        "contact_email": "hello@seva.org",
        "contact_phone": "9800000000",
        "office_address": "Pune",
    })
    assert resp.status_code == 201
    ngo = resp.get_json()
    assert ngo["status"] == "pending" and ngo["wallet_address"].startswith("RLX")

    resp = client.post(f"/api/ngos/{ngo['id']}/status", json={"status": "rejected"}, headers=admin)
    assert resp.status_code == 400
    resp = client.post(f"/api/ngos/{ngo['id']}/status", json={"status": "verified"}, headers=admin)
    assert resp.get_json()["status"] == "verified"
    assert fresh(NGO, ngo["id"]).status == "verified"
    assert AuditLog.query.filter_by(action="ngo_verified").count() == 1


def test_distribute_and_issue_over_http(client, admin, ngo_user, make_disaster, make_ngo, make_citizen, fresh):
    d = make_disaster(total=30000.0, limit=5000.0)
    ngo = make_ngo()
    citizen = make_citizen()
    ngo_id, citizen_id, disaster_id = ngo.id, citizen.id, d.id

    resp = client.post(f"/api/ngos/{ngo_id}/distribute", json={"disaster_id": disaster_id, "amount": 20000},
                       headers=admin)
    assert resp.status_code == 201
    assert resp.get_json()["ngo_balance"] == 20000.0

    resp = client.post(f"/api/ngos/{ngo_id}/issue",
                       json={"citizen_id": citizen_id, "disaster_id": disaster_id, "amount": 6000},
                       headers=ngo_user)
    assert resp.status_code == 422
    assert resp.get_json()["error"] == "limit_exceeded"

    resp = client.post(f"/api/ngos/{ngo_id}/issue",
                       json={"citizen_id": citizen_id, "disaster_id": disaster_id, "amount": 4000},
                       headers=ngo_user)
    assert resp.status_code == 201
    assert resp.get_json()["citizen_balance"] == 4000.0
    assert fresh(Profile, citizen_id).wallet_balance == 4000.0

    beneficiaries = client.get(f"/api/beneficiaries?disaster_id={disaster_id}").get_json()
    assert len(beneficiaries) == 1 and beneficiaries[0]["balance"] == 4000.0


def test_merchant_registration_approval_and_duplicate(client, admin, make_citizen, fresh):
    citizen = make_citizen(last4="4321", mobile="9123456789")
    citizen_wallet = citizen.wallet_address

    resp = client.post("/api/merchants", json={
        "full_name": "Ravi Kumar",
        "mobile": "9123456789",
        "aadhaar_number": "1111 2222 4321",
        "date_of_birth": "1985-05-05",
        "shop_name": "Kumar Kirana",
        "shop_address": "Station Road",
        "stock_categories": ["food", "medicine"],
    })
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["merchant"]["is_active"] is False
    assert body["merchant"]["aadhaar_number"] == "XXXX-XXXX-4321"
    assert body["duplicate_check"]["existing_wallets"] == [citizen_wallet]
    merchant_id = body["merchant"]["id"]

    resp = client.post(f"/api/merchants/{merchant_id}/approve", headers=admin)
    assert resp.status_code == 200
    approved = resp.get_json()
    assert approved["merchant"]["is_active"] is True
    assert approved["merchant"]["trust_score"] == 50.0
    assert approved["duplicate_check"]["flagged"] is True

    merchant = fresh(Merchant, merchant_id)
    claim = DuplicateClaim.query.one()
    assert claim.wallet_addresses == [citizen_wallet, merchant.wallet_address]

    assert [m["id"] for m in client.get("/api/merchants?status=active").get_json()] == [merchant_id]
    assert client.get("/api/merchants?q=kirana").get_json()[0]["id"] == merchant_id


def test_merchant_reject_toggle_freeze(client, admin, make_merchant, fresh):
    m = make_merchant()
    merchant_id = m.id

    assert client.post(f"/api/merchants/{merchant_id}/reject", json={}, headers=admin).status_code == 400
    resp = client.post(f"/api/merchants/{merchant_id}/reject", json={"reason": "Fake licence"}, headers=admin)
    assert resp.get_json()["is_active"] is False
    assert AuditLog.query.filter_by(action="merchant_rejected").one().details["rejection_reason"] == "Fake licence"

    assert client.post(f"/api/merchants/{merchant_id}/toggle-active", headers=admin).get_json()["is_active"] is True

    resp = client.post(f"/api/merchants/{merchant_id}/freeze", headers=admin)
    assert resp.get_json()["is_active"] is False
    assert fresh(Merchant, merchant_id).fraud_flags == 1


def test_merchant_registration_validation(client):
    resp = client.post("/api/merchants", json={
        "full_name": "A", "mobile": "9", "aadhaar_number": "1234", "date_of_birth": "2000-01-01",
        "shop_name": "S", "shop_address": "X",
    })
    assert resp.status_code == 400
    assert "12 digits" in resp.get_json()["message"]


def test_citizen_registration_flags_duplicate(client, ngo_user, make_citizen):
    existing = make_citizen(last4="1234", mobile="9876543210")
    existing_wallet = existing.wallet_address

    resp = client.post("/api/citizens", json={
        "full_name": "Asha D.", "aadhaar_last_four": "1234", "mobile": "9876543210",
    }, headers=ngo_user)

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["duplicate_check"] == {
        "is_duplicate": True, "existing_wallets": [existing_wallet], "flagged": True,
    }
    claim = DuplicateClaim.query.one()
    assert claim.wallet_addresses == [existing_wallet, body["citizen"]["wallet_address"]]


def test_citizen_without_identity_is_not_screened(client, ngo_user):
    resp = client.post("/api/citizens", json={"full_name": "No Aadhaar"}, headers=ngo_user)
    assert resp.status_code == 201
    assert resp.get_json()["duplicate_check"] is None


def test_citizen_qr_and_spending(client, make_citizen):
    c = make_citizen(balance=700.0)
    qr = client.get(f"/api/citizens/{c.id}/qr").get_json()
    assert qr == {"walletAddress": c.wallet_address, "name": "Asha Devi"}

    status = client.get(f"/api/citizens/by-wallet/{c.wallet_address}/spending").get_json()
    assert status["balance"] == 700.0 and status["is_frozen"] is False
    assert client.get("/api/citizens/by-wallet/RLXNOPE/spending").status_code == 404


def test_role_gate_can_be_disabled(settings, tmp_path):
    from relifex import create_app
    from relifex.db import db

    open_settings = settings.model_copy(update={"enforce_roles": False})
    app = create_app(open_settings)
    with app.app_context():
        resp = app.test_client().post("/api/disasters", json={"name": "Drought", "affected_states": ["Bihar"]})
        assert resp.status_code == 201
        db.session.remove()
        db.drop_all()
