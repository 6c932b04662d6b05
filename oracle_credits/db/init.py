import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from oracle_credits.core.config import get_settings
from oracle_credits.models.audit_log import AuditLog
from oracle_credits.models.credit_account import CreditAccount
from oracle_credits.models.credit_transaction import CreditTransaction
from oracle_credits.models.failed_job import FailedJob
from oracle_credits.models.idempotency_record import IdempotencyRecord
from oracle_credits.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditAccount,
    CreditTransaction,
    IdempotencyRecord,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
