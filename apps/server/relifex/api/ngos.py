"""NGO registry and fund movement routes."""

from flask import jsonify, request

from . import api_bp
from .helpers import current_actor, get_or_404, json_body, require_fields, role_required
from ..audit import record_audit
from ..config import current_settings
from ..db import db
from ..errors import ValidationError
from ..ledger import atomic, distribute_to_ngo, generate_wallet_address, issue_to_citizen
from ..models import NGO, VERIFICATION_STATUSES, Disaster, Profile, Transaction

_REGISTRATION_FIELDS = (
    "ngo_name", "legal_registration_number", "contact_email", "contact_phone", "office_address",
)
_OPTIONAL_FIELDS = ("bank_name", "bank_account_number", "bank_ifsc", "user_ref")


@api_bp.post("/ngos")
def register_ngo():
    """Register an NGO. It starts ``pending`` with an empty wallet."""
    data = json_body()
    require_fields(data, *_REGISTRATION_FIELDS)
    if "@" not in str(data["contact_email"]):
        raise ValidationError("contact_email is not a valid email address")
    with atomic():
        ngo = NGO(
            **{f: str(data[f]).strip() for f in _REGISTRATION_FIELDS},
            **{f: data.get(f) for f in _OPTIONAL_FIELDS},
            status="pending",
            wallet_address=generate_wallet_address(),
            wallet_balance=0.0,
        )
        db.session.add(ngo)
        db.session.flush()
        record_audit("ngo_registered", "ngo", ngo.id, {"ngo_name": ngo.ngo_name})
    return jsonify(ngo.to_dict()), 201


@api_bp.get("/ngos")
def list_ngos():
    q = NGO.query
    status = request.args.get("status")
    if status:
        q = q.filter(NGO.status == status)
    ngos = q.order_by(NGO.created_at.desc(), NGO.id.desc()).all()
    return jsonify([n.to_dict() for n in ngos])


@api_bp.get("/ngos/<int:ngo_id>")
def get_ngo(ngo_id: int):
    ngo = get_or_404(NGO, ngo_id)
    out = ngo.to_dict()
    out["recent_transactions"] = [
        t.to_dict() for t in (
            Transaction.query
            .filter((Transaction.from_wallet == ngo.wallet_address) | (Transaction.to_wallet == ngo.wallet_address))
            .order_by(Transaction.created_at.desc())
            .limit(20)
            .all()
        )
    ] if ngo.wallet_address else []
    return jsonify(out)


@api_bp.post("/ngos/<int:ngo_id>/status")
@role_required("admin")
def set_ngo_status(ngo_id: int):
    """Verify or reject an NGO. Rejection requires ``reason``."""
    ngo = get_or_404(NGO, ngo_id)
    data = json_body()
    status = data.get("status")
    if status not in VERIFICATION_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(VERIFICATION_STATUSES)}")
    reason = str(data.get("reason") or "").strip()
    if status == "rejected" and not reason:
        raise ValidationError("Please provide a rejection reason")
    with atomic():
        ngo.status = status
        ngo.rejection_reason = reason if status == "rejected" else None
        record_audit(f"ngo_{status}", "ngo", ngo.id, {"ngo_name": ngo.ngo_name, "reason": reason or None},
                     performed_by=current_actor())
    return jsonify(ngo.to_dict())


@api_bp.post("/ngos/<int:ngo_id>/distribute")
@role_required("admin")
def distribute_funds(ngo_id: int):
    """Treasury -> NGO. Body: ``disaster_id``, ``amount`` (INR)."""
    ngo = get_or_404(NGO, ngo_id)
    data = json_body()
    require_fields(data, "disaster_id", "amount")
    disaster = get_or_404(Disaster, data["disaster_id"])
    tx = distribute_to_ngo(ngo, disaster, data["amount"], current_settings(), actor=current_actor())
    return jsonify({
        "transaction": tx.to_dict(),
        "ngo_balance": ngo.wallet_balance,
        "tokens_distributed": disaster.tokens_distributed,
    }), 201


@api_bp.post("/ngos/<int:ngo_id>/issue")
@role_required("ngo")
def issue_funds(ngo_id: int):
    """NGO -> citizen. Body: ``citizen_id``, ``disaster_id``, ``amount``."""
    ngo = get_or_404(NGO, ngo_id)
    data = json_body()
    require_fields(data, "citizen_id", "disaster_id", "amount")
    citizen = get_or_404(Profile, data["citizen_id"], label="citizen")
    disaster = get_or_404(Disaster, data["disaster_id"])
    tx = issue_to_citizen(ngo, citizen, disaster, data["amount"], current_settings(), actor=current_actor())
    return jsonify({
        "transaction": tx.to_dict(),
        "ngo_balance": ngo.wallet_balance,
        "citizen_balance": citizen.wallet_balance,
    }), 201
