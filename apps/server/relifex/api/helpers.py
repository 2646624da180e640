"""Small request helpers shared by the route modules."""

from functools import wraps
from typing import Any, Optional

from flask import request

from ..config import current_settings
from ..db import db
from ..errors import NotFound, PermissionDenied, ValidationError
from ..models import ROLES

ROLE_HEADER = "X-Relifex-Role"
USER_HEADER = "X-Relifex-User"


def current_role() -> Optional[str]:
    role = (request.headers.get(ROLE_HEADER) or "").strip().lower()
    return role or None


def current_actor() -> Optional[str]:
    """Identifier of the caller, recorded as ``performed_by``/``resolved_by``."""
    return request.headers.get(USER_HEADER) or None


def role_required(*roles: str):
    """Allow the wrapped route only for the listed roles (admin always passes).

    The role comes from the ``X-Relifex-Role`` header set by the gateway in
    front of this service. Disabled when ``enforce_roles`` is false.
    """
    allowed = set(roles) | {"admin"}
    unknown = allowed - set(ROLES)
    if unknown:
        raise ValueError(f"unknown roles: {sorted(unknown)}")

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if current_settings().enforce_roles and current_role() not in allowed:
                raise PermissionDenied(f"Requires role: {', '.join(sorted(allowed))}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def json_body() -> dict:
    """Request JSON as a dict (empty when absent)."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body expected")
    return data


def require_fields(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "", [])]
    if missing:
        raise ValidationError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required",
                              details={"missing": missing})


def get_or_404(model, ident: Any, label: Optional[str] = None):
    try:
        key = int(ident)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid {label or model.__name__.lower()} id: {ident!r}")
    obj = db.session.get(model, key)
    if obj is None:
        raise NotFound(label or model.__name__.lower(), ident)
    return obj


def int_arg(name: str, default: int, maximum: Optional[int] = None) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return min(value, maximum) if maximum else value


def bool_arg(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.lower() in ("1", "true", "yes")
