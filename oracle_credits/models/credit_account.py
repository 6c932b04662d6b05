from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, ConfigDict, Field

from oracle_credits.models.credit_transaction import TransactionKind


class PendingEntry(BaseModel):
    """Log entry written atomically with the balance change, awaiting copy into transactions."""

    model_config = ConfigDict(use_enum_values=True)

    transaction_id: PydanticObjectId
    kind: TransactionKind
    amount: int
    description: str = ""
    balance_after: int
    settles_pending: bool = False  # completes an existing PENDING purchase instead of inserting
    related_transaction_id: PydanticObjectId | None = None
    once_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CreditAccount(Document):
    """Cached balance per user. Every write goes through services.ledger with a version check."""

    user_id: Indexed(PydanticObjectId, unique=True)
    credits: int = 0
    total_earned: int = 0
    total_spent: int = 0
    version: int = 0
    applied_keys: list[str] = Field(default_factory=list)  # one-shot grants already applied
    pending_entries: list[PendingEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
        indexes = [[("pending_entries.created_at", 1)]]
