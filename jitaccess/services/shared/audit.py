"""Audit helper. The row is committed together with the caller's own change."""

from typing import Optional

import structlog

from jitaccess.services.shared.models import AuditLog

logger = structlog.get_logger()


def emit_audit(db, actor: str, action: str, resource: str, detail: Optional[dict] = None) -> AuditLog:
    row = AuditLog(actor=actor, action=action, resource=resource, detail=detail or {})
    db.add(row)
    logger.info(action, actor=actor, resource=resource)
    return row
