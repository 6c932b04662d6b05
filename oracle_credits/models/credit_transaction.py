from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class TransactionKind(str, Enum):
    PURCHASE = "PURCHASE"
    SPEND = "SPEND"
    DAILY_BONUS = "DAILY_BONUS"
    ACHIEVEMENT = "ACHIEVEMENT"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    REFUND = "REFUND"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Provider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class ExternalRef(BaseModel):
    """(provider, provider payment id): identifies one real-world payment across all records."""

    provider: Provider
    payment_id: str

    @property
    def key(self) -> str:
        return f"{self.provider.value}:{self.payment_id}"


class CreditTransaction(Document):
    """Append-only log entry. Only status may change, and only PENDING -> COMPLETED | FAILED."""

    user_id: PydanticObjectId
    kind: TransactionKind
    amount: int  # positive = granted, negative = consumed; never zero
    description: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    provider: Provider | None = None
    provider_payment_id: str | None = None
    external_key: str | None = None  # "<provider>:<payment id>", unique when present (omitted when None)
    price_cents: int | None = None
    currency: str | None = None
    balance_after: int | None = None
    related_transaction_id: PydanticObjectId | None = None
    once_key: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    @property
    def external_ref(self) -> ExternalRef | None:
        if self.provider is None or self.provider_payment_id is None:
            return None
        return ExternalRef(provider=self.provider, payment_id=self.provider_payment_id)

    class Settings:
        name = "transactions"
        keep_nulls = False
        indexes = [
            [("user_id", ASCENDING), ("created_at", DESCENDING)],
            [("status", ASCENDING), ("kind", ASCENDING), ("created_at", ASCENDING)],
            [("provider_payment_id", ASCENDING)],
            IndexModel(
                [("external_key", ASCENDING)],
                name="external_key_unique",
                unique=True,
                sparse=True,
            ),
            IndexModel([("once_key", ASCENDING)], name="once_key", sparse=True),
        ]
