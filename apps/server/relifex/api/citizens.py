"""Citizen profiles and beneficiary enrolment routes."""

import re

from flask import jsonify, request

from . import api_bp
from .helpers import bool_arg, current_actor, get_or_404, int_arg, json_body, require_fields, role_required
from ..audit import record_audit
from ..config import current_settings
from ..db import db
from ..duplicates import flag_after_registration, screen_registration
from ..errors import NotFound, ValidationError
from ..ledger import atomic, citizen_spending_status, generate_wallet_address
from ..models import Beneficiary, Profile, Transaction


@api_bp.post("/citizens")
@role_required("ngo")
def register_citizen():
    """Create a citizen profile with a fresh wallet.

    When ``aadhaar_last_four`` and ``mobile`` are given the identity is checked
    against existing wallets; a match is flagged for review but the
    registration still goes through.
    """
    data = json_body()
    require_fields(data, "full_name")
    last4 = str(data.get("aadhaar_last_four") or "").strip() or None
    mobile = str(data.get("mobile") or "").strip() or None
    if last4 and not re.fullmatch(r"\d{4}", last4):
        raise ValidationError("aadhaar_last_four must be 4 digits")

    duplicate = screen_registration(last4, mobile)
    with atomic():
        p = Profile(
            user_ref=data.get("user_ref"),
            full_name=str(data["full_name"]).strip(),
            mobile=mobile,
            aadhaar_last_four=last4,
            role="citizen",
            wallet_address=generate_wallet_address(),
            wallet_balance=0.0,
        )
        db.session.add(p)
        db.session.flush()
        record_audit("citizen_registered", "profile", p.id, {"full_name": p.full_name},
                     performed_by=current_actor())

    duplicate = flag_after_registration(duplicate, last4, mobile, p.wallet_address)
    return jsonify({
        "citizen": p.to_dict(),
        "duplicate_check": duplicate.to_dict() if duplicate else None,
    }), 201


@api_bp.get("/citizens")
def list_citizens():
    q = Profile.query.filter(Profile.role == "citizen")
    term = (request.args.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(
            Profile.full_name.ilike(like) | Profile.mobile.like(like) | Profile.wallet_address.like(like)
        )
    limit = int_arg("limit", 100, maximum=500)
    return jsonify([p.to_dict() for p in q.order_by(Profile.id.desc()).limit(limit).all()])


@api_bp.get("/citizens/<int:citizen_id>")
def get_citizen(citizen_id: int):
    p = get_or_404(Profile, citizen_id, label="citizen")
    out = p.to_dict()
    out["beneficiaries"] = [dict(b.to_dict(), balance=b.balance) for b in p.beneficiaries]
    return jsonify(out)


@api_bp.get("/citizens/by-wallet/<wallet>/spending")
def citizen_spending(wallet: str):
    """What a merchant sees after scanning: name, balance, daily headroom."""
    p = Profile.query.filter_by(wallet_address=wallet).first()
    if not p:
        raise NotFound("citizen", wallet)
    return jsonify(citizen_spending_status(p, current_settings()))


@api_bp.get("/citizens/<int:citizen_id>/qr")
def citizen_qr(citizen_id: int):
    p = get_or_404(Profile, citizen_id, label="citizen")
    if not p.wallet_address:
        raise NotFound("wallet", citizen_id)
    return jsonify({"walletAddress": p.wallet_address, "name": p.full_name})


@api_bp.get("/citizens/<int:citizen_id>/transactions")
def citizen_transactions(citizen_id: int):
    p = get_or_404(Profile, citizen_id, label="citizen")
    if not p.wallet_address:
        return jsonify([])
    txs = (
        Transaction.query
        .filter((Transaction.from_wallet == p.wallet_address) | (Transaction.to_wallet == p.wallet_address))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(int_arg("limit", 50, maximum=500))
        .all()
    )
    return jsonify([t.to_dict() for t in txs])


@api_bp.get("/beneficiaries")
def list_beneficiaries():
    q = Beneficiary.query
    disaster_id = request.args.get("disaster_id")
    if disaster_id:
        q = q.filter(Beneficiary.disaster_id == int_arg("disaster_id", 0))
    active = bool_arg("active")
    if active is not None:
        q = q.filter(Beneficiary.is_active.is_(active))
    out = []
    for b in q.order_by(Beneficiary.created_at.desc(), Beneficiary.id.desc()).all():
        row = b.to_dict()
        row["balance"] = b.balance
        row["citizen_name"] = b.citizen.full_name if b.citizen else None
        row["disaster_name"] = b.disaster.name if b.disaster else None
        out.append(row)
    return jsonify(out)


@api_bp.post("/beneficiaries/<int:beneficiary_id>/toggle-active")
@role_required("ngo")
def toggle_beneficiary(beneficiary_id: int):
    b = get_or_404(Beneficiary, beneficiary_id)
    with atomic():
        b.is_active = not b.is_active
        record_audit("beneficiary_activated" if b.is_active else "beneficiary_deactivated",
                     "beneficiary", b.id, performed_by=current_actor())
    return jsonify(b.to_dict())
