"""Merchant-side offline payment queue.

A merchant device that loses connectivity keeps accepting payments by
appending them to a JSON file. When the connection returns, ``OfflineSyncer``
replays the queued entries against the API one at a time, in the order they
were taken:

- success marks the entry ``synced``
- failure bumps ``sync_attempts`` and leaves the entry for the next pass
- synced entries older than the retention window are pruned afterwards

There is no conflict detection and no server-side idempotency: if the API
stores a payment but the reply is lost, the next pass submits it again.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

from .client import ApiError, RelifexClient

log = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def make_qr_signature(citizen_wallet: str, amount: float, at: datetime) -> str:
    """Placeholder signature: base64 of wallet, amount and epoch ms, 32 chars."""
    ms = int(at.timestamp() * 1000)
    raw = f"{citizen_wallet}:{amount:g}:{ms}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")[:32]


@dataclass
class OfflineTransaction:
    id: str
    citizen_wallet: str
    citizen_name: str
    merchant_wallet: str
    amount: float
    purpose: str
    timestamp: str
    qr_signature: str
    synced: bool = False
    sync_attempts: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "OfflineTransaction":
        return cls(
            id=str(data["id"]),
            citizen_wallet=str(data["citizen_wallet"]),
            citizen_name=str(data.get("citizen_name") or ""),
            merchant_wallet=str(data["merchant_wallet"]),
            amount=float(data["amount"]),
            purpose=str(data.get("purpose") or ""),
            timestamp=str(data["timestamp"]),
            qr_signature=str(data.get("qr_signature") or ""),
            synced=bool(data.get("synced", False)),
            sync_attempts=int(data.get("sync_attempts", 0)),
        )

    def to_payload(self) -> dict:
        """Body for ``POST /api/offline/transactions``."""
        return {
            "client_ref": self.id,
            "citizen_wallet": self.citizen_wallet,
            "merchant_wallet": self.merchant_wallet,
            "amount": self.amount,
            "purpose": self.purpose,
            "timestamp": self.timestamp,
            "qr_signature": self.qr_signature,
        }


class OfflineQueue:
    """JSON-file backed list of offline transactions.

    Every mutation is written back immediately, so a crash loses at most the
    entry being added.
    """

    def __init__(self, path: Path, retention: timedelta = DEFAULT_RETENTION,
                 clock: Callable[[], datetime] = _utcnow):
        self.path = Path(path)
        self.retention = retention
        self._clock = clock
        self._items: List[OfflineTransaction] = self._load()

    def _load(self) -> List[OfflineTransaction]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            return [OfflineTransaction.from_dict(r) for r in raw]
        except (ValueError, KeyError, TypeError) as e:
            log.error("offline.load_failed path=%s error=%s", self.path, e)
            return []

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps([asdict(t) for t in self._items], indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    @property
    def items(self) -> List[OfflineTransaction]:
        return list(self._items)

    def add(self, citizen_wallet: str, merchant_wallet: str, amount: float, purpose: str = "",
            citizen_name: str = "", qr_signature: Optional[str] = None) -> OfflineTransaction:
        if amount <= 0:
            raise ValueError("amount must be positive")
        now = self._clock()
        tx = OfflineTransaction(
            id=f"offline_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)}",
            citizen_wallet=citizen_wallet,
            citizen_name=citizen_name,
            merchant_wallet=merchant_wallet,
            amount=float(amount),
            purpose=purpose or "Relief goods purchase",
            timestamp=now.isoformat(),
            qr_signature=qr_signature or make_qr_signature(citizen_wallet, float(amount), now),
        )
        self._items.append(tx)
        self._save()
        log.info("offline.queued id=%s amount=%.2f", tx.id, tx.amount)
        return tx

    def pending(self) -> List[OfflineTransaction]:
        return [t for t in self._items if not t.synced]

    def pending_count(self) -> int:
        return len(self.pending())

    def _get(self, tx_id: str) -> OfflineTransaction:
        for t in self._items:
            if t.id == tx_id:
                return t
        raise KeyError(tx_id)

    def mark_synced(self, tx_id: str) -> None:
        self._get(tx_id).synced = True
        self._save()

    def record_failure(self, tx_id: str) -> None:
        self._get(tx_id).sync_attempts += 1
        self._save()

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop synced entries older than the retention window."""
        cutoff = (now or self._clock()) - self.retention
        before = len(self._items)
        self._items = [t for t in self._items if not t.synced or _parse_ts(t.timestamp) > cutoff]
        removed = before - len(self._items)
        if removed:
            self._save()
        return removed

    def clear_synced(self) -> int:
        before = len(self._items)
        self._items = self.pending()
        self._save()
        return before - len(self._items)


@dataclass
class SyncReport:
    synced: int = 0
    failed: int = 0
    pruned: int = 0
    skipped: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class OfflineSyncer:
    """Replays an ``OfflineQueue`` through a ``RelifexClient``.

    ``is_syncing`` is the only guard against overlapping passes: a second
    ``sync()`` while one is running returns immediately.
    """

    def __init__(self, queue: OfflineQueue, client: RelifexClient, online: bool = True):
        self.queue = queue
        self.client = client
        self.is_online = online
        self.is_syncing = False

    def set_online(self, online: bool) -> Optional[SyncReport]:
        """Record a connectivity change; coming back online starts a sync."""
        was_online = self.is_online
        self.is_online = online
        if online and not was_online:
            log.info("offline.online pending=%s", self.queue.pending_count())
            return self.sync()
        if not online and was_online:
            log.warning("offline.offline transactions will be saved locally")
        return None

    def sync(self) -> SyncReport:
        if self.is_syncing:
            return SyncReport(skipped="sync already in progress")
        if not self.is_online:
            return SyncReport(skipped="offline")
        unsynced = self.queue.pending()
        if not unsynced:
            return SyncReport(skipped="nothing to sync")

        self.is_syncing = True
        report = SyncReport()
        try:
            for tx in unsynced:
                try:
                    self.client.submit_offline_transaction(tx.to_payload())
                except Exception as e:
                    # Any failure counts as an attempt; the pass continues
                    if isinstance(e, ApiError):
                        log.error("offline.sync_failed id=%s attempts=%s error=%s", tx.id, tx.sync_attempts + 1, e)
                    else:
                        log.exception("offline.sync_error id=%s attempts=%s", tx.id, tx.sync_attempts + 1)
                    self.queue.record_failure(tx.id)
                    report.failed += 1
                    report.errors.append(f"{tx.id}: {e}")
                    continue
                self.queue.mark_synced(tx.id)
                report.synced += 1
        finally:
            self.is_syncing = False

        report.pruned = self.queue.prune()
        log.info("offline.sync_done synced=%s failed=%s pruned=%s", report.synced, report.failed, report.pruned)
        return report
