from oracle_credits.models.audit_log import AuditLog, AuditSeverity
from oracle_credits.models.credit_account import CreditAccount, PendingEntry
from oracle_credits.models.credit_transaction import (
    CreditTransaction,
    ExternalRef,
    Provider,
    TransactionKind,
    TransactionStatus,
)
from oracle_credits.models.failed_job import FailedJob
from oracle_credits.models.idempotency_record import IdempotencyRecord
from oracle_credits.models.user import User

__all__ = [
    "AuditLog",
    "AuditSeverity",
    "CreditAccount",
    "PendingEntry",
    "CreditTransaction",
    "ExternalRef",
    "Provider",
    "TransactionKind",
    "TransactionStatus",
    "FailedJob",
    "IdempotencyRecord",
    "User",
]
