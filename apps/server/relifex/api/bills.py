"""Bill upload, AI validation and admin review routes.

NGOs upload the bills behind their spending. Each upload is stored under
``STORAGE_DIR/bills``, hashed and, when the AI gateway is configured, checked
against the claimed amount right away. Admins then approve or reject.
"""

import logging
from datetime import datetime
from pathlib import Path

from flask import current_app, jsonify, request, send_file
from sqlalchemy import func

from . import api_bp
from .helpers import current_actor, get_or_404, int_arg, json_body, role_required
from ..ai import AIConfig, compose_validation_notes, validate_bill
from ..audit import record_audit
from ..config import current_settings
from ..db import db
from ..errors import NotFound, UpstreamError, ValidationError
from ..ledger import atomic, parse_amount
from ..models import BILL_STATUSES, NGO, BillValidation, Transaction
from ..storage import compute_sha256, detect_mime, is_allowed_mime, is_within, save_upload

log = logging.getLogger(__name__)


def _bill_json(b: BillValidation) -> dict:
    out = b.to_dict()
    # Present a friendlier path by stripping the container prefix.
    out["file_path"] = (b.file_path or "").replace("/app/", "/")
    return out


def _ai_ready(settings) -> bool:
    return bool(settings.ai_enabled and settings.ai_api_key)


def _run_validation(bill: BillValidation, settings) -> dict:
    """Validate a stored bill with the AI gateway and record the outcome.

    Gateway failures leave the bill ``requires_review`` and are returned as
    ``{"error": ...}`` rather than raised: the upload itself succeeded.
    """
    content = Path(bill.file_path).read_bytes()
    try:
        result = validate_bill(
            AIConfig.from_settings(settings),
            content,
            bill.mime_type or "application/octet-stream",
            bill.amount,
            vendor_name=bill.vendor_name,
        )
    except UpstreamError as e:
        log.error("bills.validate_failed bill=%s error=%s", bill.id, e.message)
        with atomic():
            bill.ai_validation_status = "requires_review"
            bill.ai_validation_notes = f"AI validation failed: {e.message}. Manual review required."
        return {"error": e.message, "status": e.status}

    with atomic():
        bill.ai_validation_status = result["status"]
        bill.ai_confidence_score = result["confidence_score"]
        bill.ai_validation_notes = compose_validation_notes(result)
        if result.get("extracted_date") and not bill.bill_date:
            bill.bill_date = str(result["extracted_date"])[:10]
        bill.validated_at = datetime.utcnow()
    log.info("bills.validated bill=%s status=%s confidence=%.2f",
             bill.id, result["status"], result["confidence_score"])
    return result


@api_bp.post("/bills")
@role_required("ngo")
def upload_bill():
    """
    Multipart upload handler.

    Form fields:
      - ``file``: the bill image or PDF (required)
      - ``ngo_id``: uploading NGO (required)
      - ``amount``: claimed amount in INR (required)
      - ``vendor_name``, ``transaction_id`` (optional)
    """
    if "file" not in request.files:
        raise ValidationError("file is required")
    file = request.files["file"]
    if file.filename == "":
        raise ValidationError("empty filename")

    ngo = get_or_404(NGO, request.form.get("ngo_id"), label="ngo")
    amount = parse_amount(request.form.get("amount"))
    transaction_id = request.form.get("transaction_id") or None
    if transaction_id:
        transaction_id = get_or_404(Transaction, transaction_id).id

    settings = current_settings()
    storage_dir: Path = current_app.config["STORAGE_DIR"]
    dest = save_upload(file, storage_dir)
    mime = detect_mime(dest, dest.name)
    if not is_allowed_mime(mime):
        dest.unlink()
        raise ValidationError("Only images and PDF bills are accepted", details={"mime_type": mime})

    try:
        with atomic():
            bill = BillValidation(
                ngo_id=ngo.id,
                transaction_id=transaction_id,
                file_name=file.filename,
                file_path=str(dest),
                mime_type=mime,
                hash_sha256=compute_sha256(dest),
                amount=amount,
                vendor_name=(request.form.get("vendor_name") or "").strip() or None,
                bill_date=request.form.get("bill_date") or None,
                ai_validation_status="pending",
            )
            db.session.add(bill)
            db.session.flush()
            record_audit("bill_uploaded", "bill_validation", bill.id,
                         {"ngo_id": ngo.id, "amount": amount}, performed_by=current_actor())
    except Exception:
        # No record, no file
        dest.unlink(missing_ok=True)
        raise

    resubmitted = (
        BillValidation.query
        .filter(BillValidation.hash_sha256 == bill.hash_sha256, BillValidation.id != bill.id)
        .count()
    )
    validation = _run_validation(bill, settings) if _ai_ready(settings) else None
    return jsonify({
        "bill": _bill_json(bill),
        "validation": validation,
        "duplicate_uploads": resubmitted,
    }), 201


@api_bp.get("/bills")
def list_bills():
    q = BillValidation.query
    status = request.args.get("status")
    if status:
        if status not in BILL_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(BILL_STATUSES)}")
        q = q.filter(BillValidation.ai_validation_status == status)
    if request.args.get("ngo_id"):
        q = q.filter(BillValidation.ngo_id == int_arg("ngo_id", 0))
    bills = q.order_by(BillValidation.created_at.desc(), BillValidation.id.desc()).all()
    return jsonify([_bill_json(b) for b in bills])


@api_bp.get("/bills/stats")
def bill_stats():
    counts = dict(
        db.session.query(BillValidation.ai_validation_status, func.count(BillValidation.id))
        .group_by(BillValidation.ai_validation_status)
        .all()
    )
    out = {s: int(counts.get(s, 0)) for s in BILL_STATUSES}
    out["total"] = sum(out.values())
    return jsonify(out)


@api_bp.get("/bills/<int:bill_id>")
def get_bill(bill_id: int):
    return jsonify(_bill_json(get_or_404(BillValidation, bill_id, label="bill")))


@api_bp.get("/bills/<int:bill_id>/file")
def download_bill(bill_id: int):
    bill = get_or_404(BillValidation, bill_id, label="bill")
    fp = Path(bill.file_path)
    # only serve files that live under STORAGE_DIR
    if not is_within(fp, current_app.config["STORAGE_DIR"]) or not fp.exists():
        raise NotFound("bill file", bill_id)
    return send_file(fp, mimetype=bill.mime_type, download_name=bill.file_name)


@api_bp.post("/bills/<int:bill_id>/revalidate")
@role_required("admin")
def revalidate_bill(bill_id: int):
    bill = get_or_404(BillValidation, bill_id, label="bill")
    settings = current_settings()
    if not _ai_ready(settings):
        raise UpstreamError("AI gateway is not configured", service="ai_gateway", status=503)
    if not Path(bill.file_path).exists():
        raise NotFound("bill file", bill_id)
    validation = _run_validation(bill, settings)
    return jsonify({"bill": _bill_json(bill), "validation": validation})


@api_bp.post("/bills/<int:bill_id>/approve")
@role_required("admin")
def approve_bill(bill_id: int):
    bill = get_or_404(BillValidation, bill_id, label="bill")
    note = str(json_body().get("notes") or "").strip() or "Approved"
    with atomic():
        bill.ai_validation_status = "valid"
        bill.ai_validation_notes = f"{bill.ai_validation_notes or ''}\n\nAdmin Review: {note}".strip()
        bill.validated_at = datetime.utcnow()
        record_audit("bill_approved", "bill_validation", bill.id, {"notes": note}, performed_by=current_actor())
    return jsonify(_bill_json(bill))


@api_bp.post("/bills/<int:bill_id>/reject")
@role_required("admin")
def reject_bill(bill_id: int):
    bill = get_or_404(BillValidation, bill_id, label="bill")
    reason = str(json_body().get("reason") or "").strip()
    if not reason:
        raise ValidationError("Please provide a rejection reason")
    with atomic():
        bill.ai_validation_status = "invalid"
        bill.ai_validation_notes = (
            f"{bill.ai_validation_notes or ''}\n\nAdmin Review: REJECTED - {reason}".strip()
        )
        bill.validated_at = datetime.utcnow()
        record_audit("bill_rejected", "bill_validation", bill.id, {"reason": reason},
                     performed_by=current_actor())
    return jsonify(_bill_json(bill))


@api_bp.delete("/bills/<int:bill_id>")
@role_required("admin")
def delete_bill(bill_id: int):
    """Delete a bill record and its stored file (only if under STORAGE_DIR)."""
    bill = get_or_404(BillValidation, bill_id, label="bill")
    fp = Path(bill.file_path)
    file_deleted = False
    if is_within(fp, current_app.config["STORAGE_DIR"]) and fp.exists():
        fp.unlink()
        file_deleted = True
    with atomic():
        db.session.delete(bill)
        record_audit("bill_deleted", "bill_validation", bill_id, performed_by=current_actor())
    return jsonify({"ok": True, "bill_id": bill_id, "file_deleted": file_deleted})
