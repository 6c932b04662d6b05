"""Run ARQ worker. Usage: python -m oracle_credits.worker.run_worker (or: arq oracle_credits.worker.run_worker.WorkerSettings)"""

from arq import run_worker
from arq.cron import cron

from oracle_credits.worker.tasks import (
    expire_checkouts,
    flush_ledger_entries,
    get_redis_settings,
    purge_idempotency_keys,
    shutdown,
    startup,
)


class WorkerSettings:
    functions = [flush_ledger_entries, expire_checkouts, purge_idempotency_keys]
    cron_jobs = [
        cron(flush_ledger_entries, second=0),  # every minute
        cron(expire_checkouts, minute=5, second=0),  # hourly
        cron(purge_idempotency_keys, minute=35, second=0),  # hourly
    ]
    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
