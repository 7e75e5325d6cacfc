"""
Unit tests for the hot-path cache and the cached ledger wrapper.
"""

import pytest

from burstguard.models.record import BurstPolicy, Verdict
from burstguard.services.cache import CachedLedger, DecisionCache
from burstguard.services.ledger import InMemoryLedger
from burstguard.services.state_machine import observe_transition

from conftest import at, make_event


class FakeTime:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def make_record(fingerprint, minutes=0):
    return observe_transition(None, fingerprint, make_event(minutes), BurstPolicy(), at(minutes)).record


def test_cache_get_and_put():
    """Test basic cache round trip and hit/miss counters."""
    cache = DecisionCache(max_entries=10, ttl=60)

    assert cache.get("fp-1") is None
    cache.put(make_record("fp-1"))

    assert cache.get("fp-1").fingerprint == "fp-1"
    assert cache.hits == 1
    assert cache.misses == 1


def test_cache_entries_expire():
    """Test that entries expire after the TTL."""
    clock = FakeTime()
    cache = DecisionCache(max_entries=10, ttl=60, time_func=clock)
    cache.put(make_record("fp-1"))

    clock.value = 59.9
    assert cache.get("fp-1") is not None

    clock.value = 60.0
    assert cache.get("fp-1") is None
    assert len(cache) == 0


def test_cache_evicts_least_recently_used():
    """Test LRU eviction when full."""
    cache = DecisionCache(max_entries=2, ttl=60)
    cache.put(make_record("fp-1"))
    cache.put(make_record("fp-2"))

    cache.get("fp-1")
    cache.put(make_record("fp-3"))

    assert cache.get("fp-1") is not None
    assert cache.get("fp-2") is None
    assert cache.get("fp-3") is not None


def test_cache_cleanup_expired():
    """Test bulk removal of expired entries."""
    clock = FakeTime()
    cache = DecisionCache(max_entries=10, ttl=60, time_func=clock)
    cache.put(make_record("fp-1"))
    clock.value = 30
    cache.put(make_record("fp-2"))

    clock.value = 61
    removed = cache.cleanup_expired()

    assert removed == 1
    assert len(cache) == 1


def test_cache_invalidate_and_clear():
    """Test explicit invalidation."""
    cache = DecisionCache()
    cache.put(make_record("fp-1"))
    cache.put(make_record("fp-2"))

    cache.invalidate("fp-1")
    cache.invalidate("missing")
    assert cache.get("fp-1") is None

    cache.clear()
    assert len(cache) == 0


@pytest.mark.parametrize("kwargs", [{"max_entries": 0}, {"ttl": 0}])
def test_cache_rejects_invalid_settings(kwargs):
    """Test constructor validation."""
    with pytest.raises(ValueError):
        DecisionCache(**kwargs)


class TestCachedLedger:
    """Test the cache wrapper around an authoritative ledger."""

    @pytest.fixture
    def inner(self):
        return InMemoryLedger()

    @pytest.fixture
    def cached(self, inner):
        return CachedLedger(inner, DecisionCache(max_entries=100, ttl=1800))

    @pytest.mark.asyncio
    async def test_observe_writes_through(self, cached, inner, policy):
        assert await cached.peek("fp") is None

        obs = await cached.observe("fp", make_event(0), policy, at(0))

        assert obs.verdict == Verdict.ALLOW
        assert (await cached.peek("fp")).occurrence_count == 1
        assert (await inner.find_by_fingerprint("fp")).occurrence_count == 1

    @pytest.mark.asyncio
    async def test_verdict_comes_from_inner_ledger(self, cached, inner, policy):
        await cached.observe("fp", make_event(0), policy, at(0))
        # Another instance updates the ledger behind this cache's back
        await inner.observe("fp", make_event(1), policy, at(1))

        obs = await cached.observe("fp", make_event(2), policy, at(2))

        assert obs.verdict == Verdict.MUTE
        assert obs.record.occurrence_count == 3

    @pytest.mark.asyncio
    async def test_mark_escalated_invalidates(self, cached, policy):
        await cached.observe("fp", make_event(0), policy, at(0))
        await cached.observe("fp", make_event(2), policy, at(2))

        task = await cached.mark_escalated("fp", at(40))

        assert task is not None
        assert await cached.peek("fp") is None
        record = await cached.find_by_fingerprint("fp")
        assert record.escalation_sent is True

    @pytest.mark.asyncio
    async def test_find_populates_cache(self, cached, inner, policy):
        await inner.observe("fp", make_event(0), policy, at(0))

        assert await cached.peek("fp") is None
        assert await cached.find_by_fingerprint("fp") is not None
        assert await cached.peek("fp") is not None

    @pytest.mark.asyncio
    async def test_scan_due_passes_through(self, cached, policy):
        await cached.observe("fp", make_event(0), policy, at(0))
        await cached.observe("fp", make_event(2), policy, at(2))

        due = await cached.scan_due(at(40))

        assert [r.fingerprint for r in due] == ["fp"]

    @pytest.mark.asyncio
    async def test_scan_due_drops_expired_entries(self, inner, policy):
        clock = FakeTime()
        cached = CachedLedger(inner, DecisionCache(ttl=60, time_func=clock))
        await cached.observe("fp", make_event(0), policy, at(0))

        clock.value = 61
        await cached.scan_due(at(1))

        assert len(cached.cache) == 0
        assert await inner.find_by_fingerprint("fp") is not None

    @pytest.mark.asyncio
    async def test_close_clears_cache(self, cached, policy):
        await cached.observe("fp", make_event(0), policy, at(0))

        await cached.close()

        assert len(cached.cache) == 0
