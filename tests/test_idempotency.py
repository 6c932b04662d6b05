import asyncio
from datetime import datetime, timedelta

import pytest

from oracle_credits.core.config import get_settings
from oracle_credits.core.exceptions import IdempotencyInProgressError, IdempotencyKeyReusedError
from oracle_credits.models.idempotency_record import IdempotencyRecord
from oracle_credits.services.idempotency import purge_expired, scoped_key, with_idempotency

pytestmark = pytest.mark.asyncio


class Counter:
    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.calls = 0
        self.delay = delay
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ValueError("generation failed")
        return {"call": self.calls, "at": datetime(2026, 1, 1)}


async def test_stored_response_is_replayed_without_running():
    op = Counter()
    first = await with_idempotency("k1", op)
    second = await with_idempotency("k1", op)
    assert op.calls == 1
    assert first == second == {"call": 1, "at": "2026-01-01T00:00:00"}


async def test_no_key_always_runs():
    op = Counter()
    await with_idempotency(None, op)
    await with_idempotency(None, op)
    assert op.calls == 2


async def test_concurrent_callers_share_one_execution():
    op = Counter(delay=0.05)
    results = await asyncio.gather(*[with_idempotency("k2", op) for _ in range(3)])
    assert op.calls == 1
    assert results[0] == results[1] == results[2]


async def test_failure_releases_key():
    failing = Counter(fail=True)
    with pytest.raises(ValueError):
        await with_idempotency("k3", failing)
    assert await IdempotencyRecord.find_one(IdempotencyRecord.key == "k3") is None

    op = Counter()
    assert (await with_idempotency("k3", op))["call"] == 1


async def test_key_reused_for_different_request():
    await with_idempotency("k4", Counter(), fingerprint="reading|SINGLE")
    with pytest.raises(IdempotencyKeyReusedError):
        await with_idempotency("k4", Counter(), fingerprint="reading|CELTIC_CROSS")


async def test_expired_record_runs_again():
    past = datetime.utcnow() - timedelta(seconds=1)
    await IdempotencyRecord(
        key="k5", state="completed", claim_token="old", response={"call": 99}, locked_until=past, expires_at=past
    ).insert()
    op = Counter()
    assert (await with_idempotency("k5", op))["call"] == 1


async def test_stale_claim_is_taken_over():
    now = datetime.utcnow()
    await IdempotencyRecord(
        key="k6", claim_token="dead", locked_until=now - timedelta(seconds=1), expires_at=now + timedelta(hours=1)
    ).insert()
    op = Counter()
    assert (await with_idempotency("k6", op))["call"] == 1


async def test_live_claim_times_out(monkeypatch):
    monkeypatch.setattr(get_settings(), "idempotency_wait_seconds", 0.05)
    now = datetime.utcnow()
    await IdempotencyRecord(
        key="k7", claim_token="busy", locked_until=now + timedelta(seconds=30), expires_at=now + timedelta(hours=1)
    ).insert()
    op = Counter()
    with pytest.raises(IdempotencyInProgressError):
        await with_idempotency("k7", op)
    assert op.calls == 0


async def test_purge_expired():
    now = datetime.utcnow()
    await IdempotencyRecord(key="old", claim_token="a", locked_until=now, expires_at=now - timedelta(minutes=1)).insert()
    await IdempotencyRecord(key="new", claim_token="b", locked_until=now, expires_at=now + timedelta(hours=1)).insert()
    await purge_expired()
    remaining = [r.key for r in await IdempotencyRecord.find_all().to_list()]
    assert remaining == ["new"]


async def test_scoped_key_namespaces_users():
    assert scoped_key("u1", "abc") != scoped_key("u2", "abc")
