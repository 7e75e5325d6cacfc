"""
Hot-path cache of ledger records.

The cache only saves latency. Verdicts always come from the wrapped ledger's
atomic operation, so correctness holds with the cache disabled or stale. The
cache is local to one process and not coherent across instances; the TTL
(one mute cycle by default) bounds how stale an entry can get.
"""

import time
from collections import OrderedDict
from datetime import datetime
from threading import Lock
from typing import Callable, List, Optional, Tuple

from burstguard.models.decision import Observation
from burstguard.models.escalation import EscalationTask, EscalationTrigger
from burstguard.models.event import ErrorEvent
from burstguard.models.record import BurstPolicy, ErrorRecord
from burstguard.services.ledger import Ledger
from burstguard.utils.logging import get_logger

logger = get_logger(__name__)


class DecisionCache:
    """Thread-safe LRU cache with TTL."""

    def __init__(
        self,
        max_entries: int = 10000,
        ttl: float = 1800.0,
        time_func: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.max_entries = max_entries
        self.ttl = ttl
        self._time = time_func
        self._entries: "OrderedDict[str, Tuple[ErrorRecord, float]]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> Optional[ErrorRecord]:
        """Get a record if present and not expired"""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self.misses += 1
                return None

            record, expiry = entry
            if self._time() >= expiry:
                del self._entries[fingerprint]
                self.misses += 1
                return None

            self._entries.move_to_end(fingerprint)
            self.hits += 1
            return record

    def put(self, record: ErrorRecord) -> None:
        """Store a record snapshot, evicting the least recently used entry if full"""
        with self._lock:
            self._entries[record.fingerprint] = (record, self._time() + self.ttl)
            self._entries.move_to_end(record.fingerprint)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, fingerprint: str) -> None:
        with self._lock:
            self._entries.pop(fingerprint, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries and return how many were dropped"""
        now = self._time()
        with self._lock:
            expired = [k for k, (_, expiry) in self._entries.items() if now >= expiry]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class CachedLedger(Ledger):
    """
    Ledger wrapper adding cache-aside reads and write-through updates.

    Every observe and mark_escalated still goes to the wrapped ledger.
    """

    def __init__(self, inner: Ledger, cache: DecisionCache):
        self.inner = inner
        self.cache = cache

    async def initialize(self) -> None:
        await self.inner.initialize()

    async def close(self) -> None:
        await self.inner.close()
        self.cache.clear()

    async def ping(self) -> bool:
        return await self.inner.ping()

    async def peek(self, fingerprint: str) -> Optional[ErrorRecord]:
        return self.cache.get(fingerprint)

    async def observe(
        self,
        fingerprint: str,
        event: ErrorEvent,
        policy: BurstPolicy,
        now: datetime,
    ) -> Observation:
        observation = await self.inner.observe(fingerprint, event, policy, now)
        self.cache.put(observation.record)
        return observation

    async def mark_escalated(
        self,
        fingerprint: str,
        now: datetime,
        trigger: EscalationTrigger = EscalationTrigger.SWEEP,
    ) -> Optional[EscalationTask]:
        task = await self.inner.mark_escalated(fingerprint, now, trigger)
        # The committed flag lives in the ledger; drop the snapshot rather than
        # guess the new one.
        self.cache.invalidate(fingerprint)
        return task

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[ErrorRecord]:
        record = self.cache.get(fingerprint)
        if record is not None:
            return record

        record = await self.inner.find_by_fingerprint(fingerprint)
        if record is not None:
            self.cache.put(record)
            logger.debug(f"Populated cache for {fingerprint}", extra={"fingerprint": fingerprint})
        return record

    async def scan_due(self, now: datetime, limit: int = 500) -> List[ErrorRecord]:
        # Expired entries are dropped once per sweep pass
        removed = self.cache.cleanup_expired()
        if removed:
            logger.debug(f"Dropped {removed} expired cache entries")
        return await self.inner.scan_due(now, limit)
