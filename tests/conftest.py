"""Shared fixtures for burstguard tests."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import fakeredis
import pytest

from burstguard.models.event import ErrorEvent
from burstguard.models.record import BurstPolicy
from burstguard.services.ledger import InMemoryLedger
from burstguard.services.redis_ledger import RedisLedger

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(minutes: float = 0, hours: float = 0) -> datetime:
    """Time offset from T0 (the '00:00' of the test scenarios)."""
    return T0 + timedelta(hours=hours, minutes=minutes)


def make_event(minutes: float = 0, **overrides) -> ErrorEvent:
    data = {
        "source_service": "billing",
        "error_type": "Timeout",
        "error_message": "db timeout",
        "occurred_at": at(minutes),
    }
    data.update(overrides)
    return ErrorEvent(**data)


class FrozenClock:
    """Settable clock for the engine."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, minutes: float = 0, hours: float = 0) -> datetime:
        self.now = at(minutes, hours)
        return self.now


@pytest.fixture
def policy() -> BurstPolicy:
    return BurstPolicy(
        quiet_window=timedelta(minutes=5),
        mute_window=timedelta(minutes=30),
        clock_tolerance=timedelta(hours=1),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def fake_redis() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    """Fakeredis client; Lua support comes from the fakeredis[lua] extra."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)

    yield client

    await client.flushall()
    await client.aclose()


@pytest.fixture
def redis_ledger(fake_redis) -> RedisLedger:
    """Redis ledger wired to fakeredis instead of a real server."""
    ledger = RedisLedger(redis_url="redis://localhost:6379/0", key_prefix="test", retry_delay=0)
    ledger._client = fake_redis
    return ledger


@pytest.fixture(params=["memory", "redis"])
def ledger(request):
    """Every authoritative backend; correctness tests run against each."""
    if request.param == "memory":
        return InMemoryLedger()
    return request.getfixturevalue("redis_ledger")
