"""Disaster management routes (admin).

Create/update/delete disasters, raise their token budget and move them
between ``active``, ``frozen`` and ``completed``.
"""

from flask import jsonify, request
from sqlalchemy import func

from . import api_bp
from .helpers import current_actor, get_or_404, json_body, require_fields, role_required
from ..audit import record_audit
from ..config import current_settings
from ..db import db
from ..errors import ConflictError, ValidationError
from ..ledger import allocate_disaster_tokens, atomic, change_disaster_status
from ..models import DISASTER_STATUSES, Beneficiary, Disaster, Transaction
from ..notifications import send_notification


def _states(value) -> list:
    if not isinstance(value, list) or not value or not all(isinstance(s, str) and s.strip() for s in value):
        raise ValidationError("Please select at least one affected state")
    return [s.strip() for s in value]


def _non_negative(value, field: str) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if num < 0:
        raise ValidationError(f"{field} must not be negative")
    return num


def _disaster_json(d: Disaster, with_stats: bool = False) -> dict:
    out = d.to_dict()
    out["tokens_remaining"] = float(d.total_tokens_allocated or 0) - float(d.tokens_distributed or 0)
    if with_stats:
        out["beneficiary_count"] = Beneficiary.query.filter_by(disaster_id=d.id).count()
        out["transaction_volume"] = float(
            db.session.query(func.coalesce(func.sum(Transaction.amount), 0.0))
            .filter(Transaction.disaster_id == d.id).scalar() or 0
        )
    return out


@api_bp.get("/disasters")
def list_disasters():
    """Disasters, newest first; ``?status=`` filters."""
    q = Disaster.query
    status = request.args.get("status")
    if status:
        q = q.filter(Disaster.status == status)
    return jsonify([_disaster_json(d) for d in q.order_by(Disaster.created_at.desc(), Disaster.id.desc()).all()])


@api_bp.get("/disasters/<int:disaster_id>")
def get_disaster(disaster_id: int):
    return jsonify(_disaster_json(get_or_404(Disaster, disaster_id), with_stats=True))


@api_bp.post("/disasters")
@role_required("admin")
def create_disaster():
    """Create an active disaster.

    Body: ``name``, ``affected_states`` (non-empty list), optional
    ``description``, ``total_tokens`` and ``spending_limit``.
    """
    data = json_body()
    require_fields(data, "name")
    settings = current_settings()
    with atomic():
        d = Disaster(
            name=str(data["name"]).strip(),
            description=data.get("description"),
            affected_states=_states(data.get("affected_states")),
            total_tokens_allocated=_non_negative(data.get("total_tokens", 0), "total_tokens"),
            spending_limit_per_user=_non_negative(
                data.get("spending_limit", settings.default_spending_limit), "spending_limit"),
            status="active",
            created_by=current_actor(),
        )
        db.session.add(d)
        db.session.flush()
        record_audit("disaster_created", "disaster", d.id, {"name": d.name}, performed_by=current_actor())

    send_notification("disaster_created", {
        "disaster_name": d.name,
        "affected_states": d.affected_states,
        "tokens_allocated": d.total_tokens_allocated,
    }, settings)
    return jsonify(_disaster_json(d)), 201


@api_bp.patch("/disasters/<int:disaster_id>")
@role_required("admin")
def update_disaster(disaster_id: int):
    d = get_or_404(Disaster, disaster_id)
    data = json_body()
    with atomic():
        if "name" in data:
            if not str(data["name"] or "").strip():
                raise ValidationError("name is required")
            d.name = str(data["name"]).strip()
        if "description" in data:
            d.description = data["description"]
        if "affected_states" in data:
            d.affected_states = _states(data["affected_states"])
        if "total_tokens" in data:
            total = _non_negative(data["total_tokens"], "total_tokens")
            if total < float(d.tokens_distributed or 0):
                raise ValidationError("total_tokens cannot be below tokens already distributed")
            d.total_tokens_allocated = total
        if "spending_limit" in data:
            d.spending_limit_per_user = _non_negative(data["spending_limit"], "spending_limit")
    return jsonify(_disaster_json(d))


@api_bp.delete("/disasters/<int:disaster_id>")
@role_required("admin")
def delete_disaster(disaster_id: int):
    d = get_or_404(Disaster, disaster_id)
    if Transaction.query.filter_by(disaster_id=d.id).first() is not None:
        raise ConflictError("Disaster has transactions; mark it completed instead")
    with atomic():
        db.session.delete(d)
        record_audit("disaster_deleted", "disaster", disaster_id, {"name": d.name}, performed_by=current_actor())
    return jsonify({"ok": True, "disaster_id": disaster_id})


@api_bp.post("/disasters/<int:disaster_id>/allocate")
@role_required("admin")
def allocate_tokens(disaster_id: int):
    d = get_or_404(Disaster, disaster_id)
    data = json_body()
    allocate_disaster_tokens(d, data.get("amount"), current_settings(), actor=current_actor())
    return jsonify(_disaster_json(d))


@api_bp.post("/disasters/<int:disaster_id>/status")
@role_required("admin")
def set_disaster_status(disaster_id: int):
    d = get_or_404(Disaster, disaster_id)
    status = json_body().get("status")
    if status not in DISASTER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(DISASTER_STATUSES)}")
    change_disaster_status(d, status, actor=current_actor())
    return jsonify(_disaster_json(d))
