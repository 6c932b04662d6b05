"""Dead-letter: maintenance jobs that raised, kept for operator review."""

from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field

MaintenanceJob = Literal["flush_ledger_entries", "expire_checkouts", "purge_idempotency_keys"]


class FailedJob(Document):
    job_name: MaintenanceJob
    job_id: str
    job_try: int = 1
    reason: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_jobs"
        indexes = [[("job_name", 1), ("created_at", -1)]]
