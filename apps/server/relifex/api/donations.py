"""Public donations and volunteer signups.

Donations are paid over UPI on the donor's phone; the API records the result
with a ``UPI...`` payment reference. Named, non-anonymous donors appear on the
public donors wall. Volunteers sign up here and are followed up by admins.
"""

import logging

from flask import jsonify, request
from sqlalchemy import func

from . import api_bp
from .helpers import current_actor, get_or_404, int_arg, json_body, require_fields, role_required
from ..audit import record_audit
from ..config import current_settings
from ..db import db
from ..errors import ConflictError, ValidationError
from ..ledger import atomic, generate_payment_reference, parse_amount
from ..models import DONATION_STATUSES, VOLUNTEER_STATUSES, Disaster, Donation, VolunteerSignup

log = logging.getLogger(__name__)


def _optional_str(data: dict, field: str):
    return str(data.get(field) or "").strip() or None


def _donation_json(d: Donation, public: bool = False) -> dict:
    out = d.to_dict()
    out["disaster_name"] = d.disaster.name if d.disaster else None
    if d.is_anonymous:
        out["donor_name"] = None
    if public:
        for field in ("donor_email", "donor_phone", "payment_reference"):
            out.pop(field, None)
    return out


@api_bp.post("/donations")
def create_donation():
    """Record a donation paid through ``upi_id``.

    JSON: ``amount`` (at least ``min_donation``), ``upi_id``, optional
    ``donor_name``, ``donor_email``, ``donor_phone``, ``disaster_id`` and
    ``is_anonymous``. Anonymous donations never store the donor's name.
    """
    data = json_body()
    require_fields(data, "amount", "upi_id")
    settings = current_settings()
    amount = parse_amount(data["amount"])
    if amount < settings.min_donation:
        raise ValidationError(f"Minimum donation is ₹{settings.min_donation:,.0f}",
                              details={"field": "amount"})
    if "@" not in str(data["upi_id"]):
        raise ValidationError("Please enter a valid UPI ID", details={"field": "upi_id"})
    email = _optional_str(data, "donor_email")
    if email and "@" not in email:
        raise ValidationError("Valid email is required", details={"field": "donor_email"})

    disaster = None
    if data.get("disaster_id") not in (None, ""):
        disaster = get_or_404(Disaster, data["disaster_id"])
        if disaster.status != "active":
            raise ConflictError(f"Disaster is {disaster.status}", details={"disaster_id": disaster.id})

    anonymous = bool(data.get("is_anonymous"))
    with atomic():
        donation = Donation(
            donor_name=None if anonymous else _optional_str(data, "donor_name"),
            donor_email=email,
            donor_phone=_optional_str(data, "donor_phone"),
            amount=amount,
            disaster_id=disaster.id if disaster else None,
            is_anonymous=anonymous,
            payment_status="completed",
            payment_reference=generate_payment_reference(),
        )
        db.session.add(donation)
        db.session.flush()
        record_audit("donation_received", "donation", donation.id,
                     {"amount": amount, "disaster_id": donation.disaster_id}, performed_by=current_actor())
    log.info("donations.received id=%s amount=%.2f ref=%s", donation.id, amount, donation.payment_reference)
    return jsonify(_donation_json(donation)), 201


def _filtered_donations():
    q = Donation.query
    if request.args.get("disaster_id"):
        q = q.filter(Donation.disaster_id == int_arg("disaster_id", 0))
    status = request.args.get("status")
    if status:
        if status not in DONATION_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(DONATION_STATUSES)}")
        q = q.filter(Donation.payment_status == status)
    return q


@api_bp.get("/donations")
@role_required("admin")
def list_donations():
    q = _filtered_donations().order_by(Donation.created_at.desc(), Donation.id.desc())
    return jsonify([_donation_json(d) for d in q.all()])


@api_bp.get("/donations/stats")
@role_required("admin")
def donation_stats():
    """Totals for the admin dashboard, plus the largest named donor."""
    total_amount, total_count = db.session.query(
        func.coalesce(func.sum(Donation.amount), 0.0), func.count(Donation.id)
    ).one()
    completed_amount = (
        db.session.query(func.coalesce(func.sum(Donation.amount), 0.0))
        .filter(Donation.payment_status == "completed")
        .scalar()
    )
    donor_total = func.sum(Donation.amount).label("amount")
    top = (
        db.session.query(Donation.donor_name, donor_total)
        .filter(Donation.donor_name.isnot(None), Donation.is_anonymous.is_(False))
        .group_by(Donation.donor_name)
        .order_by(donor_total.desc())
        .first()
    )
    return jsonify({
        "total_amount": float(total_amount),
        "total_count": int(total_count),
        "completed_amount": float(completed_amount),
        "top_donor": {"name": top[0], "amount": float(top[1])} if top else None,
    })


@api_bp.get("/donations/public")
def public_donations():
    """Donors wall: the latest completed donations without contact details."""
    q = Donation.query.filter(Donation.payment_status == "completed")
    if request.args.get("disaster_id"):
        q = q.filter(Donation.disaster_id == int_arg("disaster_id", 0))
    items = q.order_by(Donation.created_at.desc(), Donation.id.desc()).limit(int_arg("limit", 100, maximum=500)).all()
    return jsonify({
        "items": [_donation_json(d, public=True) for d in items],
        "total_amount": sum(float(d.amount) for d in items),
        "disasters_supported": len({d.disaster_id for d in items if d.disaster_id}),
    })


@api_bp.post("/volunteers")
def volunteer_signup():
    data = json_body()
    require_fields(data, "full_name", "email", "mobile", "city", "state")
    if "@" not in str(data["email"]):
        raise ValidationError("Valid email is required", details={"field": "email"})
    mobile = str(data["mobile"]).strip()
    if len(mobile) < 10:
        raise ValidationError("Valid mobile number is required", details={"field": "mobile"})
    skills = data.get("skills") or []
    if not isinstance(skills, list):
        raise ValidationError("skills must be a list")
    with atomic():
        v = VolunteerSignup(
            full_name=str(data["full_name"]).strip(),
            email=str(data["email"]).strip(),
            mobile=mobile,
            city=str(data["city"]).strip(),
            state=str(data["state"]).strip(),
            availability=_optional_str(data, "availability"),
            skills=[str(s) for s in skills],
            status="pending",
        )
        db.session.add(v)
    return jsonify(v.to_dict()), 201


@api_bp.get("/volunteers")
@role_required("admin")
def list_volunteers():
    q = VolunteerSignup.query
    status = request.args.get("status")
    if status:
        q = q.filter(VolunteerSignup.status == status)
    state = request.args.get("state")
    if state:
        q = q.filter(VolunteerSignup.state == state)
    return jsonify([v.to_dict() for v in q.order_by(VolunteerSignup.created_at.desc(), VolunteerSignup.id.desc()).all()])


@api_bp.patch("/volunteers/<int:volunteer_id>")
@role_required("admin")
def update_volunteer(volunteer_id: int):
    v = get_or_404(VolunteerSignup, volunteer_id, label="volunteer")
    status = json_body().get("status")
    if status not in VOLUNTEER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(VOLUNTEER_STATUSES)}")
    with atomic():
        v.status = status
        record_audit(f"volunteer_{status}", "volunteer_signup", v.id, performed_by=current_actor())
    return jsonify(v.to_dict())
