"""Service-wide routes: health check, dashboard stats and the audit trail."""

from flask import jsonify, request
from sqlalchemy import func

from . import api_bp
from .helpers import int_arg, role_required
from ..db import db
from ..ledger import SETTLED_STATUSES
from ..models import (
    NGO,
    AuditLog,
    Beneficiary,
    BillValidation,
    Disaster,
    Donation,
    DuplicateClaim,
    Merchant,
    Transaction,
)


@api_bp.get("/ping")
def ping():
    """Basic health check endpoint.

    Returns a simple JSON payload indicating the API is reachable.
    """
    return jsonify({"ok": True})


@api_bp.get("/stats")
def dashboard_stats():
    """Headline counts for the admin dashboard."""
    volume = (
        db.session.query(func.coalesce(func.sum(Transaction.amount), 0.0))
        .filter(Transaction.status.in_(SETTLED_STATUSES))
        .scalar()
    )
    donated = (
        db.session.query(func.coalesce(func.sum(Donation.amount), 0.0))
        .filter(Donation.payment_status == "completed")
        .scalar()
    )
    return jsonify({
        "active_disasters": Disaster.query.filter_by(status="active").count(),
        "verified_ngos": NGO.query.filter_by(status="verified").count(),
        "active_merchants": Merchant.query.filter_by(is_active=True).count(),
        "beneficiaries": Beneficiary.query.count(),
        "transaction_volume": float(volume or 0),
        "open_duplicate_claims": DuplicateClaim.query.filter_by(status="flagged").count(),
        "pending_bills": BillValidation.query.filter(
            BillValidation.ai_validation_status.in_(("pending", "requires_review"))
        ).count(),
        "donations_received": float(donated or 0),
    })


@api_bp.get("/audit-logs")
@role_required("admin")
def list_audit_logs():
    """Most recent audit entries; filter with ``?action=`` and ``?entity_type=``."""
    q = AuditLog.query
    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action == action)
    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(int_arg("limit", 100, 500)).all()
    return jsonify([a.to_dict() for a in rows])
