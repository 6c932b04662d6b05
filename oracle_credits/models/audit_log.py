"""Audit trail of money-affecting events: checkouts, confirmations, rejections, admin adjustments."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from beanie import Document
from pydantic import Field


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"  # rejected payments; someone should look


AuditEntity = Literal["user", "transaction", "payment"]


class AuditLog(Document):
    user_id: str | None = None  # acting user; None for webhooks without a known owner
    event_type: str
    entity_type: AuditEntity
    entity_id: str | None = None  # "<provider>:<payment id>" when entity_type is payment
    severity: AuditSeverity = AuditSeverity.INFO
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
            [("severity", 1), ("created_at", -1)],
        ]
