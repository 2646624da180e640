"""Merchant onboarding, payments and settlement routes."""

import re
from datetime import datetime

from flask import jsonify, request

from . import api_bp
from .helpers import current_actor, get_or_404, json_body, require_fields, role_required
from ..audit import record_audit
from ..config import current_settings
from ..db import db
from ..duplicates import check_aadhaar_duplicate, flag_duplicate_aadhaar, screen_registration
from ..errors import ValidationError
from ..ledger import accept_payment, atomic, generate_wallet_address, pending_settlement, settle_merchant
from ..models import Merchant, Profile

_REGISTRATION_FIELDS = (
    "full_name", "mobile", "aadhaar_number", "date_of_birth", "shop_name", "shop_address",
)


def _merchant_json(m: Merchant, with_settlement: bool = False) -> dict:
    out = m.to_dict()
    # never echo the full Aadhaar number
    out["aadhaar_number"] = "XXXX-XXXX-" + (m.aadhaar_number or "")[-4:]
    if with_settlement:
        out["pending_settlement"] = pending_settlement(m)
    return out


@api_bp.post("/merchants")
def register_merchant():
    """Register a shop. It stays inactive until an admin approves it.

    The Aadhaar + mobile pair is screened for existing wallets; a match is
    reported back and flagged once the merchant's wallet exists.
    """
    data = json_body()
    require_fields(data, *_REGISTRATION_FIELDS)
    aadhaar = re.sub(r"\D", "", str(data["aadhaar_number"]))
    if len(aadhaar) != 12:
        raise ValidationError("aadhaar_number must be 12 digits")
    categories = data.get("stock_categories") or []
    if not isinstance(categories, list):
        raise ValidationError("stock_categories must be a list")

    duplicate = screen_registration(aadhaar[-4:], str(data["mobile"]).strip())
    with atomic():
        m = Merchant(
            full_name=str(data["full_name"]).strip(),
            mobile=str(data["mobile"]).strip(),
            aadhaar_number=aadhaar,
            date_of_birth=str(data["date_of_birth"]),
            shop_name=str(data["shop_name"]).strip(),
            shop_address=str(data["shop_address"]).strip(),
            shop_license=data.get("shop_license"),
            gst_number=data.get("gst_number"),
            stock_categories=categories,
            user_ref=data.get("user_ref"),
            is_active=False,
        )
        db.session.add(m)
    return jsonify({
        "merchant": _merchant_json(m),
        "duplicate_check": duplicate.to_dict() if duplicate else None,
    }), 201


@api_bp.get("/merchants")
def list_merchants():
    """``?status=active|pending`` and ``?q=`` (name, shop, mobile, address)."""
    q = Merchant.query
    status = request.args.get("status")
    if status == "active":
        q = q.filter(Merchant.is_active.is_(True))
    elif status == "pending":
        q = q.filter(Merchant.is_active.is_(False))
    term = (request.args.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(
            Merchant.full_name.ilike(like)
            | Merchant.shop_name.ilike(like)
            | Merchant.mobile.like(like)
            | Merchant.shop_address.ilike(like)
        )
    merchants = q.order_by(Merchant.total_redemptions.desc(), Merchant.id.asc()).all()
    return jsonify([_merchant_json(m) for m in merchants])


@api_bp.get("/merchants/<int:merchant_id>")
def get_merchant(merchant_id: int):
    return jsonify(_merchant_json(get_or_404(Merchant, merchant_id), with_settlement=True))


@api_bp.post("/merchants/<int:merchant_id>/approve")
@role_required("admin")
def approve_merchant(merchant_id: int):
    """Activate a merchant, issuing a wallet if it has none yet."""
    m = get_or_404(Merchant, merchant_id)
    with atomic():
        m.wallet_address = m.wallet_address or generate_wallet_address()
        m.is_active = True
        m.activation_time = datetime.utcnow()
        m.trust_score = 50.0
        if m.user_ref:
            Profile.query.filter_by(user_ref=m.user_ref).update({"is_verified": True})
        record_audit("merchant_approved", "merchant", m.id, {"merchant_name": m.shop_name},
                     performed_by=current_actor())

    duplicate = check_aadhaar_duplicate(m.aadhaar_number[-4:], m.mobile, exclude_wallet=m.wallet_address)
    if duplicate.is_duplicate:
        duplicate.flagged = flag_duplicate_aadhaar(
            m.aadhaar_number[-4:], m.mobile, m.wallet_address, existing=duplicate)
    return jsonify({"merchant": _merchant_json(m), "duplicate_check": duplicate.to_dict()})


@api_bp.post("/merchants/<int:merchant_id>/reject")
@role_required("admin")
def reject_merchant(merchant_id: int):
    m = get_or_404(Merchant, merchant_id)
    reason = str(json_body().get("reason") or "").strip()
    if not reason:
        raise ValidationError("Please provide a rejection reason")
    with atomic():
        m.is_active = False
        record_audit("merchant_rejected", "merchant", m.id,
                     {"merchant_name": m.shop_name, "rejection_reason": reason},
                     performed_by=current_actor())
    return jsonify(_merchant_json(m))


@api_bp.post("/merchants/<int:merchant_id>/toggle-active")
@role_required("admin")
def toggle_merchant(merchant_id: int):
    m = get_or_404(Merchant, merchant_id)
    with atomic():
        m.is_active = not m.is_active
        m.activation_time = datetime.utcnow() if m.is_active else None
        if m.is_active and not m.wallet_address:
            m.wallet_address = generate_wallet_address()
        record_audit("merchant_activated" if m.is_active else "merchant_deactivated", "merchant", m.id,
                     performed_by=current_actor())
    return jsonify(_merchant_json(m))


@api_bp.post("/merchants/<int:merchant_id>/freeze")
@role_required("admin")
def freeze_merchant(merchant_id: int):
    """Deactivate a merchant and count a fraud flag against it."""
    m = get_or_404(Merchant, merchant_id)
    with atomic():
        record_audit("wallet_frozen", "merchant", m.id, {"wallet_address": m.wallet_address},
                     performed_by=current_actor())
        m.is_active = False
        m.fraud_flags = int(m.fraud_flags or 0) + 1
    return jsonify(_merchant_json(m))


@api_bp.post("/merchants/<int:merchant_id>/payments")
@role_required("merchant")
def merchant_accept_payment(merchant_id: int):
    """Charge a citizen. Body: ``qr_data`` (JSON string or wallet), ``amount``, ``purpose``."""
    m = get_or_404(Merchant, merchant_id)
    data = json_body()
    require_fields(data, "qr_data", "amount")
    tx = accept_payment(m, data["qr_data"], data["amount"], current_settings(), purpose=data.get("purpose"))
    return jsonify({"transaction": tx.to_dict(), "transaction_hash": tx.transaction_hash}), 201


@api_bp.get("/merchants/<int:merchant_id>/settlement")
@role_required("merchant")
def merchant_settlement(merchant_id: int):
    m = get_or_404(Merchant, merchant_id)
    return jsonify({"merchant_id": m.id, "pending_settlement": pending_settlement(m)})


@api_bp.post("/merchants/<int:merchant_id>/settle")
@role_required("admin")
def merchant_settle(merchant_id: int):
    """Pay a merchant out to the bank. Body: ``amount``, optional ``bank_reference``."""
    m = get_or_404(Merchant, merchant_id)
    data = json_body()
    tx = settle_merchant(m, data.get("amount"), bank_reference=data.get("bank_reference"),
                         actor=current_actor())
    return jsonify({"transaction": tx.to_dict(), "pending_settlement": pending_settlement(m)}), 201
