"""Token flows between the treasury, NGOs, citizens, merchants and banks.

Every operation validates first, then mutates balances, writes the
``Transaction`` row and an audit entry, and commits once. Any failure after
validation rolls the whole session back.

Flow of funds::

    GOVT_TREASURY --distribute--> NGO --issue--> citizen --pay--> merchant --settle--> BANK_SETTLEMENT
"""

from __future__ import annotations

import json
import logging
import math
import random
import secrets
import string
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func

from .audit import record_audit
from .config import Settings
from .db import db
from .errors import ConflictError, InsufficientFunds, LimitExceeded, NotFound, ValidationError
from .models import (
    DISASTER_STATUSES, NGO, Beneficiary, Disaster, Merchant, OfflineLedgerEntry, Profile, Token, Transaction,
)
from .notifications import send_notification

log = logging.getLogger(__name__)

TREASURY_WALLET = "GOVT_TREASURY"
BANK_WALLET = "BANK_SETTLEMENT"
# Statuses that count as money actually moved
SETTLED_STATUSES = ("completed", "synced")


# ---- identifiers ----

def generate_wallet_address() -> str:
    return "RLX" + secrets.token_hex(16).upper()


def generate_transaction_hash() -> str:
    return "0x" + secrets.token_hex(32)


def generate_bank_reference() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"NEFT{int(time.time() * 1000)}{suffix}"


def generate_payment_reference() -> str:
    """UPI-style reference for a donation, e.g. ``UPI1718000000000K3Z9QA``."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"UPI{int(time.time() * 1000)}{suffix}"


# ---- helpers ----

@contextmanager
def atomic():
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def parse_amount(value: Any, field: str = "amount") -> float:
    """Coerce to a positive finite float or raise ``ValidationError``."""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid amount", details={"field": field})
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Please enter a valid amount", details={"field": field})
    return amount


def _require_verified(ngo: NGO) -> None:
    if ngo.status != "verified":
        raise ConflictError("NGO is not verified", details={"ngo_id": ngo.id, "status": ngo.status})
    if not ngo.wallet_address:
        raise ConflictError("NGO has no wallet", details={"ngo_id": ngo.id})


def _require_active(disaster: Disaster) -> None:
    if disaster.status != "active":
        raise ConflictError(
            f"Disaster is {disaster.status}", details={"disaster_id": disaster.id, "status": disaster.status}
        )


# ---- disasters ----

def allocate_disaster_tokens(disaster: Disaster, amount: Any, settings: Settings,
                             actor: Optional[str] = None) -> Disaster:
    """Raise a disaster's token budget."""
    amount = parse_amount(amount)
    if disaster.status == "completed":
        raise ConflictError("Cannot allocate tokens to a completed disaster")
    with atomic():
        disaster.total_tokens_allocated = float(disaster.total_tokens_allocated or 0) + amount
        record_audit(
            "tokens_allocated", "disaster", disaster.id,
            {"amount": amount, "new_total": disaster.total_tokens_allocated},
            performed_by=actor,
        )
    send_notification("tokens_allocated", {"disaster_name": disaster.name, "tokens_amount": amount}, settings)
    return disaster


def change_disaster_status(disaster: Disaster, status: str, actor: Optional[str] = None) -> Disaster:
    if status not in DISASTER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(DISASTER_STATUSES)}")
    with atomic():
        disaster.status = status
        disaster.end_date = datetime.utcnow() if status == "completed" else None
        record_audit("status_changed", "disaster", disaster.id, {"new_status": status}, performed_by=actor)
    return disaster


# ---- treasury -> NGO ----

def distribute_to_ngo(ngo: NGO, disaster: Disaster, amount_inr: Any, settings: Settings,
                      actor: Optional[str] = None) -> Transaction:
    """Move treasury funds to a verified NGO against a disaster's budget."""
    amount = parse_amount(amount_inr)
    _require_verified(ngo)
    _require_active(disaster)
    token_amount = amount * settings.token_rate
    remaining = float(disaster.total_tokens_allocated or 0) - float(disaster.tokens_distributed or 0)
    if token_amount > remaining:
        raise LimitExceeded(
            "Distribution exceeds the disaster's undistributed allocation",
            details={"remaining_tokens": remaining, "requested_tokens": token_amount},
        )

    with atomic():
        tx = Transaction(
            from_wallet=TREASURY_WALLET,
            from_type="government",
            to_wallet=ngo.wallet_address,
            to_type="ngo",
            amount=amount,
            purpose=f"Fund allocation for {disaster.name}",
            disaster_id=disaster.id,
            status="completed",
            transaction_hash=generate_transaction_hash(),
        )
        db.session.add(tx)
        ngo.wallet_balance = float(ngo.wallet_balance or 0) + amount
        disaster.tokens_distributed = float(disaster.tokens_distributed or 0) + token_amount
        record_audit("FUND_DISTRIBUTION", "transaction", None, {
            "ngo_id": ngo.id,
            "ngo_name": ngo.ngo_name,
            "disaster_id": disaster.id,
            "disaster_name": disaster.name,
            "amount_inr": amount,
            "token_amount": token_amount,
        }, performed_by=actor)
    log.info("ledger.distribute ngo=%s disaster=%s amount=%.2f", ngo.id, disaster.id, amount)
    return tx


# ---- NGO -> citizen ----

def issue_to_citizen(ngo: NGO, citizen: Profile, disaster: Disaster, amount: Any, settings: Settings,
                     actor: Optional[str] = None) -> Transaction:
    """Issue relief tokens from an NGO wallet to a citizen for one disaster.

    The per-citizen spending limit caps the citizen's cumulative allocation for
    that disaster, not just this single issuance.
    """
    amount = parse_amount(amount)
    _require_verified(ngo)
    _require_active(disaster)
    if not citizen.wallet_address:
        raise ConflictError("Citizen has no wallet", details={"citizen_id": citizen.id})
    if amount > float(ngo.wallet_balance or 0):
        raise InsufficientFunds("Insufficient balance in NGO wallet", details={"balance": ngo.wallet_balance})

    beneficiary = Beneficiary.query.filter_by(citizen_id=citizen.id, disaster_id=disaster.id).first()
    already = float(beneficiary.tokens_allocated or 0) if beneficiary else 0.0
    limit = float(disaster.spending_limit_per_user or settings.default_spending_limit)
    if already + amount > limit:
        raise LimitExceeded(
            f"Amount exceeds per-citizen limit of ₹{limit:,.0f}",
            details={"limit": limit, "already_allocated": already},
        )

    with atomic():
        tx = Transaction(
            from_wallet=ngo.wallet_address,
            from_type="ngo",
            to_wallet=citizen.wallet_address,
            to_type="citizen",
            amount=amount,
            purpose=f"Relief fund issuance for {disaster.name}",
            disaster_id=disaster.id,
            status="completed",
            transaction_hash=generate_transaction_hash(),
        )
        db.session.add(tx)
        ngo.wallet_balance = float(ngo.wallet_balance) - amount
        citizen.wallet_balance = float(citizen.wallet_balance or 0) + amount
        if beneficiary:
            beneficiary.tokens_allocated = already + amount
            beneficiary.is_active = True
        else:
            db.session.add(Beneficiary(
                citizen_id=citizen.id,
                disaster_id=disaster.id,
                tokens_allocated=amount,
                tokens_spent=0.0,
                is_active=True,
            ))
        db.session.add(Token(
            owner_wallet=citizen.wallet_address,
            owner_type="citizen",
            amount=amount,
            disaster_id=disaster.id,
            purpose=tx.purpose,
        ))
        record_audit("FUNDS_ISSUED", "beneficiary", citizen.id, {
            "ngo_id": ngo.id,
            "disaster_id": disaster.id,
            "amount": amount,
        }, performed_by=actor)
    send_notification("beneficiary_added", {
        "disaster_name": disaster.name,
        "beneficiary_name": citizen.full_name,
        "tokens_amount": amount,
    }, settings)
    return tx


# ---- citizen -> merchant ----

def resolve_citizen(qr_data: Any) -> Profile:
    """Find the citizen a scanned QR payload refers to.

    The payload is either JSON with ``walletAddress`` or the bare wallet string.
    """
    wallet = None
    if isinstance(qr_data, dict):
        wallet = qr_data.get("walletAddress")
    elif isinstance(qr_data, str):
        try:
            parsed = json.loads(qr_data)
        except ValueError:
            parsed = None
        wallet = parsed.get("walletAddress") if isinstance(parsed, dict) else qr_data.strip()
    if not wallet:
        raise ValidationError("QR data does not contain a wallet address")
    profile = Profile.query.filter_by(wallet_address=wallet).first()
    if not profile:
        raise NotFound("citizen", wallet)
    return profile


def _active_beneficiaries(profile: Profile) -> list:
    return (
        Beneficiary.query
        .filter_by(citizen_id=profile.id, is_active=True)
        .order_by(Beneficiary.id.asc())
        .all()
    )


def wallet_is_frozen(wallet: str) -> bool:
    return db.session.query(Token.id).filter_by(owner_wallet=wallet, is_frozen=True).first() is not None


def spent_today(wallet: str, now: Optional[datetime] = None) -> float:
    now = now or datetime.utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    total = (
        db.session.query(func.coalesce(func.sum(Transaction.amount), 0.0))
        .filter(
            Transaction.from_wallet == wallet,
            Transaction.created_at >= midnight,
            Transaction.status.in_(SETTLED_STATUSES),
        )
        .scalar()
    )
    return float(total or 0)


def citizen_spending_status(profile: Profile, settings: Settings) -> dict:
    """Balance and daily-limit headroom shown to the merchant before charging."""
    beneficiaries = _active_beneficiaries(profile)
    if beneficiaries:
        balance = sum(b.balance for b in beneficiaries)
    else:
        balance = float(profile.wallet_balance or 0)
    today = spent_today(profile.wallet_address)
    return {
        "wallet_address": profile.wallet_address,
        "full_name": profile.full_name or "Citizen",
        "balance": balance,
        "spent_today": today,
        "daily_limit": settings.daily_spend_limit,
        "remaining_today": max(0.0, settings.daily_spend_limit - today),
        "is_frozen": wallet_is_frozen(profile.wallet_address),
    }


def _spend(profile: Profile, amount: float) -> None:
    """Charge active beneficiary allocations oldest first.

    Whatever the allocations cannot cover lands on the newest one, so an
    overspend (possible for replayed offline payments) stays visible.
    """
    left = amount
    beneficiaries = _active_beneficiaries(profile)
    for b in beneficiaries:
        if left <= 0:
            break
        take = min(left, max(0.0, b.balance))
        b.tokens_spent = float(b.tokens_spent or 0) + take
        left -= take
    if left > 0 and beneficiaries:
        last = beneficiaries[-1]
        last.tokens_spent = float(last.tokens_spent or 0) + left
    profile.wallet_balance = float(profile.wallet_balance or 0) - amount


def _require_merchant_active(merchant: Merchant) -> None:
    if not merchant.is_active or not merchant.wallet_address:
        raise ConflictError("Merchant is not active", details={"merchant_id": merchant.id})


def accept_payment(merchant: Merchant, qr_data: Any, amount: Any, settings: Settings,
                   purpose: Optional[str] = None) -> Transaction:
    """Charge a citizen's relief balance at a merchant (online mode)."""
    amount = parse_amount(amount)
    _require_merchant_active(merchant)
    citizen = resolve_citizen(qr_data)
    status = citizen_spending_status(citizen, settings)
    if status["is_frozen"]:
        raise ConflictError("Citizen wallet is frozen pending review")
    if amount > status["balance"]:
        raise InsufficientFunds(details={"balance": status["balance"]})
    if amount > status["remaining_today"]:
        raise LimitExceeded(
            f"Daily limit exceeded. Remaining: ₹{status['remaining_today']:,.0f}",
            details={"remaining_today": status["remaining_today"]},
        )

    with atomic():
        tx = Transaction(
            from_wallet=citizen.wallet_address,
            from_type="citizen",
            to_wallet=merchant.wallet_address,
            to_type="merchant",
            amount=amount,
            purpose=purpose or "Relief goods purchase",
            status="completed",
            transaction_hash=generate_transaction_hash(),
            is_offline=False,
        )
        db.session.add(tx)
        _spend(citizen, amount)
        merchant.total_redemptions = float(merchant.total_redemptions or 0) + amount
    log.info("ledger.payment merchant=%s citizen=%s amount=%.2f", merchant.id, citizen.id, amount)
    return tx


def record_offline_payment(
    citizen_wallet: str,
    merchant_wallet: str,
    amount: Any,
    local_timestamp: datetime,
    qr_signature: str,
    purpose: Optional[str] = None,
    client_ref: Optional[str] = None,
) -> tuple:
    """Store a payment a merchant captured offline and is now replaying.

    The payment already happened at the counter, so balance and daily limits are
    not re-checked. Returns ``(transaction, ledger_entry_or_None)``.
    """
    amount = parse_amount(amount)
    if not citizen_wallet or not merchant_wallet:
        raise ValidationError("citizen_wallet and merchant_wallet are required")

    merchant = Merchant.query.filter_by(wallet_address=merchant_wallet).first()
    citizen = Profile.query.filter_by(wallet_address=citizen_wallet).first()
    entry = None
    with atomic():
        tx = Transaction(
            from_wallet=citizen_wallet,
            from_type="citizen",
            to_wallet=merchant_wallet,
            to_type="merchant",
            amount=amount,
            purpose=purpose or "Relief goods purchase",
            status="synced",
            transaction_hash=generate_transaction_hash(),
            is_offline=True,
            created_at=local_timestamp,
        )
        db.session.add(tx)
        db.session.flush()
        if citizen:
            _spend(citizen, amount)
        if merchant:
            merchant.total_redemptions = float(merchant.total_redemptions or 0) + amount
            entry = OfflineLedgerEntry(
                merchant_id=merchant.id,
                transaction_id=tx.id,
                client_ref=client_ref,
                citizen_wallet=citizen_wallet,
                amount=amount,
                local_timestamp=local_timestamp,
                qr_signature=qr_signature,
                synced=True,
                synced_at=datetime.utcnow(),
            )
            db.session.add(entry)
    log.info("ledger.offline_replay merchant_wallet=%s ref=%s amount=%.2f", merchant_wallet, client_ref, amount)
    return tx, entry


# ---- merchant -> bank ----

def _sum_amount(*criteria) -> float:
    total = db.session.query(func.coalesce(func.sum(Transaction.amount), 0.0)).filter(*criteria).scalar()
    return float(total or 0)


def pending_settlement(merchant: Merchant) -> float:
    """Tokens a merchant has received but not yet settled to the bank."""
    if not merchant.wallet_address:
        return 0.0
    received = _sum_amount(
        Transaction.to_wallet == merchant.wallet_address,
        Transaction.to_type == "merchant",
        Transaction.status.in_(SETTLED_STATUSES),
    )
    settled = _sum_amount(
        Transaction.from_wallet == merchant.wallet_address,
        Transaction.from_type == "merchant",
        Transaction.to_type == "bank",
        Transaction.status == "completed",
    )
    return received - settled


def settle_merchant(merchant: Merchant, amount: Any, bank_reference: Optional[str] = None,
                    actor: Optional[str] = None) -> Transaction:
    amount = parse_amount(amount)
    pending = pending_settlement(merchant)
    if amount > pending:
        raise LimitExceeded("Amount exceeds pending settlement", details={"pending_settlement": pending})
    reference = bank_reference or generate_bank_reference()
    with atomic():
        tx = Transaction(
            from_wallet=merchant.wallet_address,
            from_type="merchant",
            to_wallet=BANK_WALLET,
            to_type="bank",
            amount=amount,
            purpose=f"Bank settlement for {merchant.shop_name}",
            status="completed",
            transaction_hash=reference,
        )
        db.session.add(tx)
        record_audit("MERCHANT_SETTLEMENT", "merchant", merchant.id, {
            "merchant_id": merchant.id,
            "merchant_name": merchant.shop_name,
            "amount_inr": amount,
            "bank_reference": reference,
        }, performed_by=actor)
    return tx
