"""Duplicate-claim review and AI fraud analysis routes."""

from datetime import datetime

from flask import jsonify, request
from sqlalchemy import func

from . import api_bp
from .helpers import current_actor, get_or_404, json_body, require_fields, role_required
from ..ai import AIConfig, analyze_fraud
from ..config import current_settings
from ..db import db
from ..duplicates import check_aadhaar_duplicate, resolve_duplicate_claim
from ..errors import UpstreamError, ValidationError
from ..ledger import wallet_is_frozen
from ..models import CLAIM_STATUSES, NGO, DuplicateClaim, Merchant, Profile, Transaction

_ENTITY_MODELS = {"ngo": NGO, "merchant": Merchant}


@api_bp.post("/duplicates/check")
def duplicate_check():
    """Body: ``aadhaar_last_four``, ``mobile``. Reports matches without flagging."""
    data = json_body()
    require_fields(data, "aadhaar_last_four", "mobile")
    result = check_aadhaar_duplicate(str(data["aadhaar_last_four"]).strip(), str(data["mobile"]).strip())
    return jsonify(result.to_dict())


@api_bp.get("/duplicate-claims")
@role_required("admin")
def list_duplicate_claims():
    q = DuplicateClaim.query
    status = request.args.get("status")
    if status:
        if status not in CLAIM_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(CLAIM_STATUSES)}")
        q = q.filter(DuplicateClaim.status == status)
    claims = q.order_by(DuplicateClaim.flagged_at.desc(), DuplicateClaim.id.desc()).all()
    return jsonify([c.to_dict() for c in claims])


def _wallet_details(wallet: str) -> dict:
    profile = Profile.query.filter_by(wallet_address=wallet).first()
    merchant = Merchant.query.filter_by(wallet_address=wallet).first()
    return {
        "wallet_address": wallet,
        "profile": {"id": profile.id, "full_name": profile.full_name, "mobile": profile.mobile}
        if profile else None,
        "merchant": {"id": merchant.id, "shop_name": merchant.shop_name, "is_active": merchant.is_active}
        if merchant else None,
        "is_frozen": wallet_is_frozen(wallet),
    }


@api_bp.get("/duplicate-claims/<int:claim_id>")
@role_required("admin")
def get_duplicate_claim(claim_id: int):
    claim = get_or_404(DuplicateClaim, claim_id, label="duplicate claim")
    out = claim.to_dict()
    out["wallets"] = [_wallet_details(w) for w in claim.wallet_addresses or []]
    return jsonify(out)


@api_bp.post("/duplicate-claims/<int:claim_id>/resolve")
@role_required("admin")
def resolve_claim(claim_id: int):
    """Body: ``action`` (dismiss, freeze_all, freeze_duplicates), optional ``notes``."""
    claim = get_or_404(DuplicateClaim, claim_id, label="duplicate claim")
    data = json_body()
    require_fields(data, "action")
    return jsonify(resolve_duplicate_claim(claim, data["action"], notes=data.get("notes"), actor=current_actor()))


def _entity_metrics(entity_type: str, entity) -> dict:
    wallet = entity.wallet_address
    count, volume = 0, 0.0
    if wallet:
        count, volume = (
            db.session.query(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0.0))
            .filter((Transaction.from_wallet == wallet) | (Transaction.to_wallet == wallet))
            .one()
        )
    months = max(0, (datetime.utcnow() - entity.created_at).days // 30) if entity.created_at else 0
    return {
        "entity_type": entity_type,
        "entity_id": str(entity.id),
        "transaction_count": int(count or 0),
        "transaction_volume": float(volume or 0),
        "fraud_flags": int(entity.fraud_flags or 0),
        "time_in_system_months": months,
        "compliance_rate": 100,
    }


@api_bp.post("/fraud/analyze")
@role_required("admin")
def fraud_analyze():
    """Risk assessment for an NGO or merchant.

    Body: ``entity_type`` (ngo|merchant), ``entity_id`` and optionally
    ``metrics``; omitted metrics are computed from stored transactions.
    """
    data = json_body()
    require_fields(data, "entity_type", "entity_id")
    entity_type = data["entity_type"]
    model = _ENTITY_MODELS.get(entity_type)
    if model is None:
        raise ValidationError("entity_type must be ngo or merchant")
    metrics = data.get("metrics")
    if metrics is None:
        metrics = _entity_metrics(entity_type, get_or_404(model, data["entity_id"], label=entity_type))
    elif not isinstance(metrics, dict):
        raise ValidationError("metrics must be an object")
    else:
        metrics = dict(metrics, entity_type=entity_type, entity_id=str(data["entity_id"]))

    settings = current_settings()
    if not settings.ai_enabled:
        raise UpstreamError("AI analysis is disabled", service="ai_gateway", status=503)
    assessment = analyze_fraud(AIConfig.from_settings(settings), metrics)
    return jsonify({"entity_type": entity_type, "entity_id": metrics["entity_id"],
                    "metrics": metrics, "analysis": assessment})
