"""
Idempotency guard for client-initiated, credit-consuming requests.

A key is claimed by inserting its record (unique index on key). The claimant runs the
operation and stores the JSON-encoded result; concurrent callers with the same key poll
until that result appears and return it. A failed operation releases the key. Provider
callbacks are not routed through here: they are keyed on the payment itself.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from fastapi.encoders import jsonable_encoder
from pymongo.errors import DuplicateKeyError

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import IdempotencyInProgressError, IdempotencyKeyReusedError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.idempotency_record import IdempotencyRecord

log = get_logger(__name__)

COMPLETED = "completed"
IN_PROGRESS = "in_progress"


def scoped_key(user_id: Any, key: str) -> str:
    """Namespace a client key by user so two users can never share a record."""
    return f"{user_id}:{key}"


def _records():
    return IdempotencyRecord.get_motor_collection()


async def _execute(key: str, token: str, operation: Callable[[], Awaitable[Any]]) -> Any:
    settings = get_settings()
    try:
        result = await operation()
    except Exception:
        await _records().delete_one({"key": key, "claim_token": token})
        raise
    snapshot = jsonable_encoder(result)
    now = datetime.utcnow()
    stored = await _records().update_one(
        {"key": key, "claim_token": token},
        {"$set": {
            "state": COMPLETED,
            "response": snapshot,
            "completed_at": now,
            "expires_at": now + timedelta(seconds=settings.idempotency_ttl_seconds),
        }},
    )
    if stored.modified_count != 1:
        log.warning("idempotency_claim_lost", key=key)
    return snapshot


async def with_idempotency(
    key: str | None,
    operation: Callable[[], Awaitable[Any]],
    fingerprint: str | None = None,
) -> Any:
    """
    Run operation at most once per key within the TTL and return its JSON-encoded result.
    Without a key the operation simply runs.
    """
    if key is None:
        return jsonable_encoder(await operation())

    settings = get_settings()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.idempotency_wait_seconds
    lock = timedelta(seconds=settings.idempotency_lock_seconds)

    while True:
        now = datetime.utcnow()
        record = await IdempotencyRecord.find_one(IdempotencyRecord.key == key)
        if record is not None and record.expires_at <= now:
            await _records().delete_one({"key": key, "claim_token": record.claim_token})
            record = None

        if record is None:
            token = uuid.uuid4().hex
            try:
                await IdempotencyRecord(
                    key=key,
                    fingerprint=fingerprint,
                    state=IN_PROGRESS,
                    claim_token=token,
                    locked_until=now + lock,
                    expires_at=now + timedelta(seconds=settings.idempotency_ttl_seconds),
                ).insert()
            except DuplicateKeyError:
                continue  # another caller claimed it first
            return await _execute(key, token, operation)

        if fingerprint and record.fingerprint and record.fingerprint != fingerprint:
            raise IdempotencyKeyReusedError(key)
        if record.state == COMPLETED:
            log.info("idempotency_replayed", key=key)
            return record.response
        if record.locked_until <= now:
            # Claimant died or stalled past its lock; take the claim over.
            token = uuid.uuid4().hex
            taken = await _records().update_one(
                {"key": key, "claim_token": record.claim_token, "state": IN_PROGRESS},
                {"$set": {"claim_token": token, "locked_until": now + lock, "fingerprint": fingerprint}},
            )
            if taken.modified_count == 1:
                log.warning("idempotency_stale_claim_taken", key=key)
                return await _execute(key, token, operation)
            continue
        if loop.time() >= deadline:
            raise IdempotencyInProgressError(key)
        await asyncio.sleep(settings.idempotency_poll_seconds)


async def purge_expired() -> int:
    """Delete expired records. The TTL index does this eventually; the worker makes it prompt."""
    result = await _records().delete_many({"expires_at": {"$lte": datetime.utcnow()}})
    return result.deleted_count
