import logging
from typing import Any, Optional

from .db import db
from .models import AuditLog

log = logging.getLogger(__name__)


def record_audit(
    action: str,
    entity_type: str,
    entity_id: Any = None,
    details: Optional[dict] = None,
    performed_by: Optional[str] = None,
) -> AuditLog:
    """Add an audit entry to the current session (caller commits)."""
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
        performed_by=performed_by,
    )
    db.session.add(entry)
    log.info("audit.%s entity=%s id=%s by=%s", action, entity_type, entity_id, performed_by)
    return entry
