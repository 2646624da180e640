"""Duplicate Aadhaar detection, flagging and review."""
import base64

import pytest

from relifex.db import db
from relifex.duplicates import (
    aadhaar_hash,
    check_aadhaar_duplicate,
    flag_duplicate_aadhaar,
    resolve_duplicate_claim,
)
from relifex.errors import ConflictError, ValidationError
from relifex.models import AuditLog, DuplicateClaim, Merchant, Token


def test_hash_is_base64_without_symbols():
    expected = base64.b64encode(b"1234-9876543210").decode().replace("=", "").replace("+", "").replace("/", "")
    assert aadhaar_hash("1234", "9876543210") == expected
    assert aadhaar_hash("1234", "9876543210") == aadhaar_hash("1234", "9876543210")
    assert aadhaar_hash("1234", "9876543211") != expected


def test_check_requires_four_digits(app):
    with pytest.raises(ValidationError):
        check_aadhaar_duplicate("12a4", "9876543210")
    with pytest.raises(ValidationError):
        check_aadhaar_duplicate("1234", "")


def test_check_combines_profiles_and_merchants(make_citizen, make_merchant):
    p = make_citizen(last4="1234", mobile="9876543210")
    make_citizen(last4="1234", mobile="9000000000")  # other mobile
    m = make_merchant(aadhaar="111122221234")
    make_merchant(aadhaar="111122225678", mobile="9000000002")

    result = check_aadhaar_duplicate("1234", "9876543210")

    assert result.is_duplicate
    assert result.existing_wallets == [p.wallet_address, m.wallet_address]
    assert result.flagged is False


def test_check_without_match(make_citizen):
    make_citizen(last4="1234", mobile="9876543210")
    result = check_aadhaar_duplicate("4321", "9876543210")
    assert not result.is_duplicate and result.existing_wallets == []


def test_flag_returns_false_without_duplicate(app):
    assert flag_duplicate_aadhaar("1234", "9876543210", "RLXNEW") is False
    assert DuplicateClaim.query.count() == 0


def test_flag_creates_then_merges_without_repeats(make_citizen):
    first = make_citizen(last4="1234", mobile="9876543210")

    assert flag_duplicate_aadhaar("1234", "9876543210", "RLXSECOND") is True
    claim = DuplicateClaim.query.one()
    assert claim.status == "flagged"
    assert claim.wallet_addresses == [first.wallet_address, "RLXSECOND"]

    assert flag_duplicate_aadhaar("1234", "9876543210", "RLXTHIRD") is True
    assert flag_duplicate_aadhaar("1234", "9876543210", "RLXSECOND") is True
    db.session.expire_all()
    claim = DuplicateClaim.query.one()
    assert claim.wallet_addresses == [first.wallet_address, "RLXSECOND", "RLXTHIRD"]
    assert AuditLog.query.filter_by(action="duplicate_aadhaar_detected").count() == 3


def _claim_with_wallets(wallets):
    claim = DuplicateClaim(aadhaar_hash="hash", wallet_addresses=wallets, status="flagged")
    db.session.add(claim)
    for w in wallets:
        db.session.add(Token(owner_wallet=w, owner_type="citizen", amount=100.0))
    db.session.commit()
    return claim


def test_freeze_duplicates_keeps_first_wallet(make_merchant):
    m = make_merchant()
    claim = _claim_with_wallets(["RLXKEEP", m.wallet_address])

    out = resolve_duplicate_claim(claim, "freeze_duplicates", notes="same person", actor="admin-1")

    assert [f["wallet"] for f in out["frozen"]] == [m.wallet_address]
    assert Token.query.filter_by(owner_wallet="RLXKEEP").one().is_frozen is False
    assert Token.query.filter_by(owner_wallet=m.wallet_address).one().is_frozen is True
    assert db.session.get(Merchant, m.id).is_active is False
    assert claim.status == "resolved" and claim.reviewed_by == "admin-1"
    assert AuditLog.query.filter_by(action="duplicate_claim_freeze_duplicates").count() == 1


def test_freeze_all_and_dismiss(app):
    claim = _claim_with_wallets(["RLXA", "RLXB"])
    resolve_duplicate_claim(claim, "freeze_all")
    assert Token.query.filter_by(is_frozen=True).count() == 2

    other = DuplicateClaim(aadhaar_hash="other", wallet_addresses=["RLXC"], status="flagged")
    db.session.add(other)
    db.session.commit()
    out = resolve_duplicate_claim(other, "dismiss")
    assert out["frozen"] == [] and other.status == "dismissed"


def test_resolving_twice_or_bad_action_is_rejected(app):
    claim = _claim_with_wallets(["RLXA"])
    with pytest.raises(ValidationError):
        resolve_duplicate_claim(claim, "delete")
    resolve_duplicate_claim(claim, "dismiss")
    with pytest.raises(ConflictError):
        resolve_duplicate_claim(claim, "freeze_all")


def test_new_wallet_reopens_reviewed_claim(make_citizen):
    make_citizen(last4="1234", mobile="9876543210")
    flag_duplicate_aadhaar("1234", "9876543210", "RLXSECOND")
    claim = DuplicateClaim.query.one()
    resolve_duplicate_claim(claim, "dismiss")

    flag_duplicate_aadhaar("1234", "9876543210", "RLXTHIRD")

    db.session.expire_all()
    assert DuplicateClaim.query.one().status == "flagged"
