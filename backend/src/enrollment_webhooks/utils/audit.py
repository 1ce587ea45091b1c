"""Audit trail helpers for compliance logging."""
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_webhooks.models.audit_log import AuditLog

logger = structlog.get_logger(__name__)

# Never persisted in audit changes
REDACTED_FIELDS = {"secret", "new_secret"}


async def log_audit(
    db: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    action: str,
    changes: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit entry to the current unit of work.

    Args:
        db: Database session (the caller commits)
        entity_type: Type of entity (webhook, delivery)
        entity_id: Entity UUID
        action: Action performed (register, update, delete, rotate_secret, abandon)
        changes: Dictionary of changes {field: {old: X, new: Y}}
        request_id: Request correlation ID; defaults to the bound request context

    Returns:
        The pending audit log row
    """
    if request_id is None:
        request_id = structlog.contextvars.get_contextvars().get("request_id")

    safe_changes = {
        field: value for field, value in (changes or {}).items() if field not in REDACTED_FIELDS
    }

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        changes=safe_changes,
        request_id=request_id,
    )
    db.add(audit_log)

    logger.info(
        "audit_log_created",
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        change_count=len(safe_changes),
    )

    return audit_log


def diff_fields(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Build a {field: {old, new}} mapping for fields whose values changed."""
    return {
        field: {"old": before.get(field), "new": value}
        for field, value in after.items()
        if before.get(field) != value
    }
