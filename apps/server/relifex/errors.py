"""Error taxonomy for the relief API.

Service code raises these instead of returning error tuples; the API blueprint
turns them into JSON responses (see ``register_error_handlers``).

Usage:
    from .errors import NotFound, InsufficientFunds

    if not ngo:
        raise NotFound("ngo", ngo_id)
    if amount > ngo.wallet_balance:
        raise InsufficientFunds("Insufficient balance in NGO wallet")
"""

import logging
from typing import Any, Dict, Optional

from flask import jsonify

log = logging.getLogger(__name__)


class RelifexError(Exception):
    """Base exception for all application errors."""

    status = 500

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
        status: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        if status is not None:
            self.status = status
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(RelifexError):
    """Request data failed basic validation."""

    status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="validation_error", details=details)


class PermissionDenied(RelifexError):
    """Caller's role may not perform this action."""

    status = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message, code="forbidden")


class NotFound(RelifexError):
    status = 404

    def __init__(self, entity: str, entity_id: Any = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(message, code="not_found", details={"entity": entity, "id": entity_id})


class ConflictError(RelifexError):
    """Entity state does not allow the operation (e.g. NGO not verified)."""

    status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="conflict", details=details)


class InsufficientFunds(RelifexError):
    status = 422

    def __init__(self, message: str = "Insufficient balance", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="insufficient_funds", details=details)


class LimitExceeded(RelifexError):
    """A per-citizen, per-day or allocation limit would be exceeded."""

    status = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="limit_exceeded", details=details)


class UpstreamError(RelifexError):
    """An external service (AI gateway, email provider, API) failed.

    ``status`` can pass through meaningful upstream codes such as 429 (rate
    limited) or 402 (credits exhausted); anything else maps to 502.
    """

    status = 502

    def __init__(self, message: str, service: str, status: Optional[int] = None):
        super().__init__(message, code="upstream_error", details={"service": service}, status=status)


def register_error_handlers(bp) -> None:
    """Attach JSON error handlers for ``RelifexError`` to a blueprint."""

    @bp.errorhandler(RelifexError)
    def handle_relifex_error(exc: RelifexError):
        if exc.status >= 500:
            log.error("api.error code=%s message=%s", exc.code, exc.message)
        else:
            log.info("api.reject code=%s message=%s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status
