"""Duplicate identity (Aadhaar) detection.

A citizen or merchant identity is keyed by the last four Aadhaar digits plus
the mobile number. When that pair already belongs to another wallet, the new
wallet is recorded on a ``DuplicateClaim`` for admin review. Matching is exact;
there is no fuzzy matching or scoring.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .audit import record_audit
from .db import db
from .errors import ConflictError, ValidationError
from .ledger import atomic
from .models import DuplicateClaim, Merchant, Profile, Token

log = logging.getLogger(__name__)

RESOLUTION_ACTIONS = ("dismiss", "freeze_all", "freeze_duplicates")

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool
    existing_wallets: List[str] = field(default_factory=list)
    flagged: bool = False

    def to_dict(self) -> dict:
        return {
            "is_duplicate": self.is_duplicate,
            "existing_wallets": list(self.existing_wallets),
            "flagged": self.flagged,
        }


def aadhaar_hash(aadhaar_last_four: str, mobile: str) -> str:
    """Reversible key for a last-four + mobile pair (not a cryptographic hash)."""
    raw = f"{aadhaar_last_four}-{mobile}".encode("utf-8")
    return _NON_ALNUM.sub("", base64.b64encode(raw).decode("ascii"))


def _validate_identity(aadhaar_last_four: str, mobile: str) -> None:
    if not aadhaar_last_four or not re.fullmatch(r"\d{4}", aadhaar_last_four):
        raise ValidationError("aadhaar_last_four must be 4 digits")
    if not mobile:
        raise ValidationError("mobile is required")


def check_aadhaar_duplicate(aadhaar_last_four: str, mobile: str,
                            exclude_wallet: Optional[str] = None) -> DuplicateCheckResult:
    """Collect wallets already tied to this identity.

    Profiles match on both last four digits and mobile; merchants match when
    their stored Aadhaar number ends with the last four digits.
    """
    _validate_identity(aadhaar_last_four, mobile)
    wallets: List[str] = []

    profiles = Profile.query.filter_by(aadhaar_last_four=aadhaar_last_four, mobile=mobile).all()
    wallets.extend(p.wallet_address for p in profiles if p.wallet_address)

    merchants = Merchant.query.filter(Merchant.aadhaar_number.like(f"%{aadhaar_last_four}")).all()
    wallets.extend(m.wallet_address for m in merchants if m.wallet_address)

    if exclude_wallet:
        wallets = [w for w in wallets if w != exclude_wallet]
    # one wallet can show up as both a profile and a merchant
    wallets = list(dict.fromkeys(wallets))
    return DuplicateCheckResult(is_duplicate=bool(wallets), existing_wallets=wallets)


def flag_duplicate_aadhaar(aadhaar_last_four: str, mobile: str, new_wallet: str,
                           existing: Optional[DuplicateCheckResult] = None) -> bool:
    """Record ``new_wallet`` on the claim for this identity.

    Returns False when the identity has no other wallet. ``existing`` lets a
    caller reuse a check it already ran (registration checks before inserting
    the new row, so re-checking afterwards would see the new wallet itself).
    """
    result = existing or check_aadhaar_duplicate(aadhaar_last_four, mobile, exclude_wallet=new_wallet)
    if not result.is_duplicate:
        return False

    key = aadhaar_hash(aadhaar_last_four, mobile)
    all_wallets = list(dict.fromkeys(result.existing_wallets + [new_wallet]))
    with atomic():
        claim = DuplicateClaim.query.filter_by(aadhaar_hash=key).first()
        if claim:
            merged = list(dict.fromkeys(list(claim.wallet_addresses or []) + all_wallets))
            # reassign so the JSON column is marked dirty
            claim.wallet_addresses = merged
            if claim.status != "flagged":
                claim.status = "flagged"
                claim.flagged_at = datetime.utcnow()
        else:
            claim = DuplicateClaim(aadhaar_hash=key, wallet_addresses=all_wallets, status="flagged")
            db.session.add(claim)
        record_audit("duplicate_aadhaar_detected", "duplicate_claim", None, {
            "aadhaar_last_four": aadhaar_last_four,
            "wallet_count": len(claim.wallet_addresses),
        })
    log.warning("duplicate.flagged hash=%s wallets=%s", key, len(claim.wallet_addresses))
    return True


def screen_registration(aadhaar_last_four: Optional[str], mobile: Optional[str]) -> Optional[DuplicateCheckResult]:
    """Run the duplicate check for a registration that has not been saved yet."""
    if not aadhaar_last_four or not mobile:
        return None
    return check_aadhaar_duplicate(aadhaar_last_four, mobile)


def flag_after_registration(result: Optional[DuplicateCheckResult], aadhaar_last_four: str,
                            mobile: str, new_wallet: Optional[str]) -> Optional[DuplicateCheckResult]:
    """Flag the just-created wallet when the pre-registration screen found a match."""
    if result is None or not result.is_duplicate or not new_wallet:
        return result
    result.flagged = flag_duplicate_aadhaar(aadhaar_last_four, mobile, new_wallet, existing=result)
    return result


def freeze_wallet(wallet: str) -> dict:
    """Freeze a wallet's tokens and deactivate a merchant that owns it."""
    tokens = Token.query.filter_by(owner_wallet=wallet).update({"is_frozen": True})
    merchants = Merchant.query.filter_by(wallet_address=wallet).update({"is_active": False})
    return {"wallet": wallet, "tokens_frozen": tokens, "merchants_deactivated": merchants}


def resolve_duplicate_claim(claim: DuplicateClaim, action: str, notes: Optional[str] = None,
                            actor: Optional[str] = None) -> dict:
    """Apply an admin decision to a flagged claim.

    ``freeze_duplicates`` keeps the first (oldest) wallet and freezes the rest.
    """
    if action not in RESOLUTION_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(RESOLUTION_ACTIONS)}")
    if claim.status != "flagged":
        raise ConflictError(f"Claim already {claim.status}", details={"claim_id": claim.id})

    wallets = list(claim.wallet_addresses or [])
    if action == "freeze_all":
        to_freeze = wallets
    elif action == "freeze_duplicates":
        to_freeze = wallets[1:]
    else:
        to_freeze = []

    with atomic():
        frozen = [freeze_wallet(w) for w in to_freeze]
        claim.status = "dismissed" if action == "dismiss" else "resolved"
        claim.reviewed_at = datetime.utcnow()
        claim.reviewed_by = actor
        claim.notes = notes
        record_audit(f"duplicate_claim_{action}", "duplicate_claim", claim.id, {
            "wallet_count": len(wallets),
            "action_taken": action,
        }, performed_by=actor)
    return {"claim": claim.to_dict(), "frozen": frozen}
