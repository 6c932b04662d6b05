"""Best-effort audit trail for credit and payment events."""

from typing import Any

from oracle_credits.core.logging import get_logger
from oracle_credits.models.audit_log import AuditEntity, AuditLog, AuditSeverity

log = get_logger(__name__)


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: AuditEntity,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    severity: AuditSeverity | str = AuditSeverity.INFO,
) -> None:
    """Append to audit_logs. Never raises: a failing audit sink must not fail the caller."""
    try:
        await AuditLog(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            severity=severity,
            metadata=metadata or {},
        ).insert()
    except Exception:
        log.warning(
            "audit_write_failed",
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            exc_info=True,
        )
