"""Email notifications for disaster and token events.

Messages are plain text and are delivered through the Resend HTTP API. A
missing API key or an empty recipient list turns a send into a logged no-op,
and delivery failures never propagate to the operation that triggered them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import Settings

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
NOTIFICATION_TYPES = ("disaster_created", "tokens_allocated", "beneficiary_added")

_FOOTER = "This is an automated notification from the Relief Token System."


def _inr(amount: Optional[float]) -> str:
    return f"₹{float(amount or 0):,.0f}"


def build_message(kind: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Return ``(subject, text)`` for a notification type."""
    if kind not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {kind}")
    name = data.get("disaster_name") or ""
    if kind == "disaster_created":
        states = ", ".join(data.get("affected_states") or []) or "Not specified"
        subject = f"New Disaster Alert: {name}"
        body = [
            f"A new disaster has been created: {name}",
            f"Affected states: {states}",
            f"Total tokens allocated: {_inr(data.get('tokens_allocated'))}",
        ]
    elif kind == "tokens_allocated":
        subject = f"Tokens Allocated: {name}"
        body = [
            f"New tokens were added to {name}.",
            f"Amount: {_inr(data.get('tokens_amount'))}",
        ]
    else:
        subject = f"You've been added as a beneficiary: {name}"
        body = [
            f"Hello {data.get('beneficiary_name') or 'Beneficiary'},",
            f"You have been registered as a beneficiary for disaster relief under {name}.",
            f"Tokens issued: {_inr(data.get('tokens_amount'))}",
            "You can use these tokens at registered merchants for essential supplies.",
        ]
    return subject, "\n".join(body + ["", _FOOTER])


def send_notification(
    kind: str,
    data: Dict[str, Any],
    settings: Settings,
    recipients: Optional[List[str]] = None,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """Send a notification email. Returns a small status dict, never raises.

    ``recipients`` defaults to ``settings.notification_recipients``.
    """
    subject, text = build_message(kind, data)
    to = list(recipients or settings.notification_recipients or [])
    if not to:
        log.info("notify.skip kind=%s reason=no_recipients", kind)
        return {"sent": False, "reason": "no recipients"}
    if not settings.resend_api_key:
        log.info("notify.skip kind=%s reason=no_api_key", kind)
        return {"sent": False, "reason": "email provider not configured"}

    payload = {
        "from": settings.notification_from,
        "to": to,
        "subject": subject,
        "text": text,
    }
    headers = {"Authorization": f"Bearer {settings.resend_api_key}"}
    own_client = client is None
    http = client or httpx.Client(timeout=10.0)
    try:
        resp = http.post(RESEND_URL, json=payload, headers=headers)
        resp.raise_for_status()
        try:
            email_id = resp.json().get("id")
        except (ValueError, AttributeError):
            email_id = None
        log.info("notify.sent kind=%s recipients=%s", kind, len(to))
        return {"sent": True, "id": email_id}
    except httpx.HTTPError as e:
        log.warning("notify.failed kind=%s error=%s", kind, e)
        return {"sent": False, "reason": str(e)}
    finally:
        if own_client:
            http.close()
