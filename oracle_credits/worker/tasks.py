"""ARQ maintenance jobs: ledger outbox flush, checkout expiry, idempotency purge."""

import uuid
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from arq.connections import RedisSettings

from oracle_credits.core.config import get_settings
from oracle_credits.core.logging import bind_job_context, configure_logging, get_logger
from oracle_credits.db.init import init_db
from oracle_credits.models.failed_job import FailedJob
from oracle_credits.services import idempotency, ledger, reconciler

log = get_logger(__name__)


async def _run_with_dlq(ctx: dict[str, Any], job_name: str, job: Callable[[], Awaitable[int]]) -> int:
    """Run job; on exception persist to FailedJob then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    bind_job_context(job_name, job_id)
    log.info("job_start")
    try:
        count = await job()
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            job_try=ctx.get("job_try", 1),
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", dead_letter_id=fid, reason=str(e))
        raise
    log.info("job_done", count=count)
    return count


async def flush_ledger_entries(ctx: dict[str, Any]) -> int:
    """Cron: finish ledger writes whose transaction copy never landed."""
    return await _run_with_dlq(ctx, "flush_ledger_entries", ledger.flush_stale_entries)


async def expire_checkouts(ctx: dict[str, Any]) -> int:
    """Cron: fail PENDING purchases abandoned past checkout_expiry_hours."""
    return await _run_with_dlq(ctx, "expire_checkouts", reconciler.expire_stale_checkouts)


async def purge_idempotency_keys(ctx: dict[str, Any]) -> int:
    """Cron: drop expired idempotency records."""
    return await _run_with_dlq(ctx, "purge_idempotency_keys", idempotency.purge_expired)


async def startup(ctx: dict) -> None:
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.strip("/") else 0,
    )
