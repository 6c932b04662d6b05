from datetime import datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class IdempotencyRecord(Document):
    """Claim and response snapshot for one client idempotency key."""

    key: Indexed(str, unique=True)
    fingerprint: str | None = None
    state: str = "in_progress"  # in_progress | completed
    claim_token: str
    response: Any = None
    locked_until: datetime
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "idempotency_keys"
        indexes = [IndexModel([("expires_at", ASCENDING)], name="expires_at_ttl", expireAfterSeconds=0)]
