"""Complaint and grievance routes."""

from datetime import datetime

from flask import jsonify, request

from . import api_bp
from .helpers import current_actor, get_or_404, json_body, require_fields, role_required
from ..audit import record_audit
from ..db import db
from ..errors import ValidationError
from ..ledger import atomic
from ..models import COMPLAINT_STATUSES, GRIEVANCE_STATUSES, NGO, Complaint, Grievance, Merchant

_CLOSED_COMPLAINT = ("resolved", "closed")
_CLOSED_GRIEVANCE = ("resolved", "dismissed")


@api_bp.post("/complaints")
def create_complaint():
    data = json_body()
    require_fields(data, "complaint_type", "subject", "description")
    with atomic():
        c = Complaint(
            complainant_id=data.get("complainant_id") or current_actor(),
            complaint_type=str(data["complaint_type"]).strip(),
            subject=str(data["subject"]).strip(),
            description=str(data["description"]).strip(),
            status="open",
        )
        db.session.add(c)
    return jsonify(c.to_dict()), 201


@api_bp.get("/complaints")
def list_complaints():
    q = Complaint.query
    status = request.args.get("status")
    if status:
        q = q.filter(Complaint.status == status)
    kind = request.args.get("type")
    if kind:
        q = q.filter(Complaint.complaint_type == kind)
    return jsonify([c.to_dict() for c in q.order_by(Complaint.created_at.desc(), Complaint.id.desc()).all()])


@api_bp.patch("/complaints/<int:complaint_id>")
@role_required("admin")
def update_complaint(complaint_id: int):
    """Move a complaint along; closing it stamps ``resolved_at``/``resolved_by``."""
    c = get_or_404(Complaint, complaint_id)
    data = json_body()
    status = data.get("status")
    if status not in COMPLAINT_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(COMPLAINT_STATUSES)}")
    with atomic():
        c.status = status
        if "resolution" in data:
            c.resolution = data["resolution"]
        if status in _CLOSED_COMPLAINT:
            c.resolved_at = datetime.utcnow()
            c.resolved_by = current_actor()
        else:
            c.resolved_at = None
            c.resolved_by = None
        record_audit(f"complaint_{status}", "complaint", c.id, performed_by=current_actor())
    return jsonify(c.to_dict())


@api_bp.post("/grievances")
def create_grievance():
    """File a grievance, optionally against a merchant or NGO, with evidence links."""
    data = json_body()
    require_fields(data, "grievance_type", "description")
    evidence = data.get("evidence_urls") or []
    if not isinstance(evidence, list):
        raise ValidationError("evidence_urls must be a list")
    merchant_id = get_or_404(Merchant, data["merchant_id"]).id if data.get("merchant_id") else None
    ngo_id = get_or_404(NGO, data["ngo_id"], label="ngo").id if data.get("ngo_id") else None
    with atomic():
        g = Grievance(
            complainant_id=data.get("complainant_id") or current_actor(),
            grievance_type=str(data["grievance_type"]).strip(),
            description=str(data["description"]).strip(),
            merchant_id=merchant_id,
            ngo_id=ngo_id,
            evidence_urls=[str(u) for u in evidence],
            status="pending",
        )
        db.session.add(g)
    return jsonify(g.to_dict()), 201


@api_bp.get("/grievances")
def list_grievances():
    q = Grievance.query
    status = request.args.get("status")
    if status:
        q = q.filter(Grievance.status == status)
    return jsonify([g.to_dict() for g in q.order_by(Grievance.created_at.desc(), Grievance.id.desc()).all()])


@api_bp.post("/grievances/<int:grievance_id>/resolve")
@role_required("admin")
def resolve_grievance(grievance_id: int):
    """Body: ``status`` (investigating, resolved or dismissed) and ``resolution``."""
    g = get_or_404(Grievance, grievance_id)
    data = json_body()
    status = data.get("status") or "resolved"
    if status not in GRIEVANCE_STATUSES or status == "pending":
        raise ValidationError("status must be one of investigating, resolved, dismissed")
    resolution = str(data.get("resolution") or "").strip()
    if status in _CLOSED_GRIEVANCE and not resolution:
        raise ValidationError("resolution is required")
    with atomic():
        g.status = status
        g.resolution = resolution or g.resolution
        if status in _CLOSED_GRIEVANCE:
            g.resolved_at = datetime.utcnow()
            g.resolved_by = current_actor()
        record_audit(f"grievance_{status}", "grievance", g.id, performed_by=current_actor())
    return jsonify(g.to_dict())
