"""Transaction history, offline replay and settlement listing."""

from datetime import datetime, timezone

from flask import jsonify, request

from . import api_bp
from .helpers import bool_arg, get_or_404, int_arg, json_body, require_fields, role_required
from ..errors import ValidationError
from ..ledger import record_offline_payment
from ..models import TRANSACTION_STATUSES, OfflineLedgerEntry, Transaction


def _parse_local_timestamp(value) -> datetime:
    """ISO-8601 from the device clock, stored as naive UTC."""
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("timestamp must be ISO-8601", details={"timestamp": value})
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


@api_bp.get("/transactions")
def list_transactions():
    """Filters: ``wallet`` (either side), ``type`` (to_type), ``status``,
    ``disaster_id``, ``offline``; paged with ``limit``/``offset``."""
    q = Transaction.query
    wallet = request.args.get("wallet")
    if wallet:
        q = q.filter((Transaction.from_wallet == wallet) | (Transaction.to_wallet == wallet))
    to_type = request.args.get("type")
    if to_type:
        q = q.filter(Transaction.to_type == to_type)
    status = request.args.get("status")
    if status:
        if status not in TRANSACTION_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(TRANSACTION_STATUSES)}")
        q = q.filter(Transaction.status == status)
    if request.args.get("disaster_id"):
        q = q.filter(Transaction.disaster_id == int_arg("disaster_id", 0))
    offline = bool_arg("offline")
    if offline is not None:
        q = q.filter(Transaction.is_offline.is_(offline))

    total = q.count()
    limit = int_arg("limit", 50, maximum=500)
    offset = int_arg("offset", 0)
    rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(offset).limit(limit).all()
    return jsonify({"items": [t.to_dict() for t in rows], "total": total, "limit": limit, "offset": offset})


@api_bp.get("/transactions/<int:transaction_id>")
def get_transaction(transaction_id: int):
    return jsonify(get_or_404(Transaction, transaction_id).to_dict())


@api_bp.post("/offline/transactions")
@role_required("merchant")
def submit_offline_transaction():
    """Replay one payment a merchant device queued while offline.

    Body: ``citizen_wallet``, ``merchant_wallet``, ``amount``, ``timestamp``,
    ``qr_signature``, optional ``purpose`` and ``client_ref``. Replays are
    not de-duplicated.
    """
    data = json_body()
    require_fields(data, "citizen_wallet", "merchant_wallet", "amount", "timestamp", "qr_signature")
    tx, entry = record_offline_payment(
        citizen_wallet=str(data["citizen_wallet"]),
        merchant_wallet=str(data["merchant_wallet"]),
        amount=data["amount"],
        local_timestamp=_parse_local_timestamp(data["timestamp"]),
        qr_signature=str(data["qr_signature"]),
        purpose=data.get("purpose"),
        client_ref=data.get("client_ref"),
    )
    return jsonify({
        "transaction": tx.to_dict(),
        "ledger_entry": entry.to_dict() if entry else None,
    }), 201


@api_bp.get("/offline/ledger")
@role_required("merchant")
def list_offline_ledger():
    q = OfflineLedgerEntry.query
    if request.args.get("merchant_id"):
        q = q.filter(OfflineLedgerEntry.merchant_id == int_arg("merchant_id", 0))
    limit = int_arg("limit", 100, maximum=500)
    rows = q.order_by(OfflineLedgerEntry.local_timestamp.desc(), OfflineLedgerEntry.id.desc()).limit(limit).all()
    return jsonify([e.to_dict() for e in rows])


@api_bp.get("/settlements")
@role_required("merchant")
def list_settlements():
    """Merchant -> bank payouts, newest first; ``?wallet=`` narrows to one merchant."""
    q = Transaction.query.filter(Transaction.from_type == "merchant", Transaction.to_type == "bank")
    wallet = request.args.get("wallet")
    if wallet:
        q = q.filter(Transaction.from_wallet == wallet)
    rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(int_arg("limit", 100, 500)).all()
    return jsonify([t.to_dict() for t in rows])
