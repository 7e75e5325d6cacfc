"""
Redis-backed ledger.

Layout:
- one hash per fingerprint at ``{prefix}:record:{fingerprint}`` holding the
  ErrorRecord fields (timestamps as epoch milliseconds, booleans as 0/1,
  unset optionals as empty strings)
- one sorted set ``{prefix}:mute_deadlines`` scored by muted_until, holding
  fingerprints that are muted and not yet escalated (sweep index)

The observe and mark-escalated transitions run as Lua scripts, so each is a
single atomic compare-and-set on the server no matter how many evaluator
instances call it concurrently.

Includes connection pooling and retry logic for idempotent reads.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from burstguard.errors import StoreUnavailable
from burstguard.models.decision import Observation
from burstguard.models.escalation import EscalationTask, EscalationTrigger
from burstguard.models.event import ErrorEvent
from burstguard.models.record import BurstPolicy, ErrorRecord, Verdict
from burstguard.services.ledger import Ledger
from burstguard.services.state_machine import build_escalation_task, is_escalation_due
from burstguard.utils.clock import duration_millis, from_millis, to_millis


logger = logging.getLogger(__name__)


# KEYS: record hash, mute deadline index
# ARGV: fingerprint, service, type, message, t, now, quiet, mute, tolerance
OBSERVE_SCRIPT = """
local record_key = KEYS[1]
local due_key = KEYS[2]
local fingerprint = ARGV[1]
local t = tonumber(ARGV[5])
local now = tonumber(ARGV[6])
local quiet = tonumber(ARGV[7])
local mute = tonumber(ARGV[8])
local tolerance = tonumber(ARGV[9])

local function reply(verdict, anomaly, flushed)
    local out = {verdict, anomaly, #flushed}
    for _, v in ipairs(flushed) do
        table.insert(out, v)
    end
    for _, v in ipairs(redis.call('HGETALL', record_key)) do
        table.insert(out, v)
    end
    return out
end

local anomaly = 0
if t > now + tolerance then
    t = now
    anomaly = 1
end

local last_seen = redis.call('HGET', record_key, 'last_seen_at')
if not last_seen then
    redis.call('HSET', record_key,
        'fingerprint', fingerprint,
        'source_service', ARGV[2],
        'error_type', ARGV[3],
        'error_message', ARGV[4],
        'first_seen_at', t,
        'last_seen_at', t,
        'occurrence_count', 1,
        'muted_until', '',
        'escalation_sent', '0',
        'escalation_sent_at', '',
        'burst_started_at', t,
        'burst_count', 1)
    return reply('allow', anomaly, {})
end

last_seen = tonumber(last_seen)
if anomaly == 0 and t < last_seen - tolerance then
    t = now
    anomaly = 1
end

local new_last = last_seen
if t > new_last then
    new_last = t
end
local muted_until = redis.call('HGET', record_key, 'muted_until')
local sent = redis.call('HGET', record_key, 'escalation_sent')

local new_burst = (t - last_seen) > quiet
if new_burst and muted_until ~= '' and t <= tonumber(muted_until) then
    new_burst = false
end

if anomaly == 1 or new_burst then
    local flushed = {}
    if muted_until ~= '' and sent == '0' then
        flushed = redis.call('HGETALL', record_key)
        redis.call('HSET', record_key, 'escalation_sent_at', now)
    end
    redis.call('HINCRBY', record_key, 'occurrence_count', 1)
    redis.call('HSET', record_key,
        'last_seen_at', new_last,
        'muted_until', '',
        'escalation_sent', '0',
        'burst_started_at', t,
        'burst_count', 1)
    redis.call('ZREM', due_key, fingerprint)
    return reply('allow', anomaly, flushed)
end

local new_muted = t + mute
if muted_until ~= '' and tonumber(muted_until) > new_muted then
    new_muted = tonumber(muted_until)
end
redis.call('HINCRBY', record_key, 'occurrence_count', 1)
redis.call('HINCRBY', record_key, 'burst_count', 1)
redis.call('HSET', record_key, 'last_seen_at', new_last, 'muted_until', new_muted)
if sent == '0' then
    redis.call('ZADD', due_key, new_muted, fingerprint)
end
return reply('mute', anomaly, {})
"""

# KEYS: record hash, mute deadline index
# ARGV: fingerprint, now
MARK_ESCALATED_SCRIPT = """
local record_key = KEYS[1]
local due_key = KEYS[2]
local muted_until = redis.call('HGET', record_key, 'muted_until')
if not muted_until or muted_until == '' then
    redis.call('ZREM', due_key, ARGV[1])
    return {}
end
if redis.call('HGET', record_key, 'escalation_sent') == '1' then
    redis.call('ZREM', due_key, ARGV[1])
    return {}
end
if tonumber(muted_until) > tonumber(ARGV[2]) then
    return {}
end
redis.call('HSET', record_key, 'escalation_sent', '1', 'escalation_sent_at', ARGV[2])
redis.call('ZREM', due_key, ARGV[1])
return redis.call('HGETALL', record_key)
"""

# KEYS: mute deadline index, then one record hash per fingerprint
# ARGV: fingerprints, in the same order as the record keys
PRUNE_SCRIPT = """
local removed = 0
for i, fingerprint in ipairs(ARGV) do
    local record_key = KEYS[i + 1]
    local stale = redis.call('EXISTS', record_key) == 0
    if not stale then
        local muted_until = redis.call('HGET', record_key, 'muted_until')
        stale = (not muted_until) or muted_until == ''
            or redis.call('HGET', record_key, 'escalation_sent') == '1'
    end
    if stale then
        removed = removed + redis.call('ZREM', KEYS[1], fingerprint)
    end
end
return removed
"""


def _millis(value: Any) -> int:
    return int(float(value))


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return from_millis(_millis(value))


def _pairs_to_dict(items: Sequence[Any]) -> Dict[str, str]:
    """Turn a flat HGETALL-style reply into a dict."""
    return {str(items[i]): str(items[i + 1]) for i in range(0, len(items) - 1, 2)}


def record_from_hash(data: Dict[str, str]) -> ErrorRecord:
    """Decode a stored record hash."""
    return ErrorRecord(
        fingerprint=data["fingerprint"],
        source_service=data["source_service"],
        error_type=data["error_type"],
        error_message=data["error_message"],
        first_seen_at=from_millis(_millis(data["first_seen_at"])),
        last_seen_at=from_millis(_millis(data["last_seen_at"])),
        occurrence_count=_millis(data["occurrence_count"]),
        muted_until=_optional_datetime(data.get("muted_until")),
        escalation_sent=data.get("escalation_sent") == "1",
        escalation_sent_at=_optional_datetime(data.get("escalation_sent_at")),
        burst_started_at=from_millis(_millis(data["burst_started_at"])),
        burst_count=_millis(data["burst_count"]),
    )


class RedisLedger(Ledger):
    """
    Redis ledger with connection pooling and retry logic.

    Mutations (observe, mark_escalated) are attempted exactly once: a retried
    script after an ambiguous timeout could count the same occurrence twice.
    Reads are retried with exponential backoff.
    """

    # Redis key templates
    RECORD_KEY = "{prefix}:record:{fingerprint}"
    DUE_INDEX_KEY = "{prefix}:mute_deadlines"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_prefix: str = "burstguard",
        max_connections: int = 10,
        max_retries: int = 3,
        retry_delay: float = 0.2,
        connection_timeout: float = 2.0
    ):
        """
        Initialize Redis ledger.

        Args:
            redis_url: Redis connection URL. If None, will load from settings.
            key_prefix: Namespace for all keys
            max_connections: Connection pool size
            max_retries: Maximum number of attempts for idempotent reads
            retry_delay: Base delay between retries (exponential backoff)
            connection_timeout: Socket and connect timeout in seconds
        """
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._max_connections = max_connections
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._connection_timeout = connection_timeout
        self._observe_script = None
        self._mark_escalated_script = None
        self._prune_script = None

    async def initialize(self) -> None:
        """
        Initialize Redis connection pool.

        Should be called during application startup.

        Raises:
            StoreUnavailable: If connection fails
        """
        try:
            if not self._redis_url:
                from burstguard.config import settings
                self._redis_url = settings.redis_url

            self._pool = ConnectionPool.from_url(
                self._redis_url,
                max_connections=self._max_connections,
                decode_responses=True,
                socket_timeout=self._connection_timeout,
                socket_connect_timeout=self._connection_timeout
            )

            self._client = redis.Redis(connection_pool=self._pool)

            await self._client.ping()

            logger.info("Redis ledger connection pool initialized successfully")

        except RedisError as e:
            logger.error(f"Failed to initialize Redis connection pool: {e}")
            raise StoreUnavailable(f"Failed to connect to Redis: {e}") from e

    async def close(self) -> None:
        """
        Close Redis connection pool.

        Should be called during application shutdown.
        """
        if self._client:
            await self._client.aclose()

        if self._pool:
            await self._pool.disconnect()

        logger.info("Redis ledger connection pool closed")

    @asynccontextmanager
    async def _get_client(self):
        """
        Get Redis client with connection check.

        Yields:
            redis.Redis: Redis client instance

        Raises:
            RuntimeError: If client not initialized
        """
        if not self._client:
            raise RuntimeError("Redis ledger not initialized. Call initialize() first.")

        if self._observe_script is None:
            self._observe_script = self._client.register_script(OBSERVE_SCRIPT)
            self._mark_escalated_script = self._client.register_script(MARK_ESCALATED_SCRIPT)
            self._prune_script = self._client.register_script(PRUNE_SCRIPT)

        yield self._client

    async def _retry_operation(self, operation, *args, idempotent: bool = True, **kwargs):
        """
        Execute Redis operation, retrying transient errors for idempotent ones.

        Args:
            operation: Async function to execute
            idempotent: Whether the operation is safe to repeat

        Returns:
            Operation result

        Raises:
            StoreUnavailable: If the operation fails
        """
        attempts = self._max_retries if idempotent else 1
        last_error = None

        for attempt in range(attempts):
            try:
                return await operation(*args, **kwargs)

            except (ConnectionError, TimeoutError) as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Redis operation failed (attempt {attempt + 1}/{attempts}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Redis operation failed after {attempts} attempt(s): {e}")

            except RedisError as e:
                # Non-transient errors, don't retry
                logger.error(f"Redis operation failed with non-transient error: {e}")
                raise StoreUnavailable(f"Redis operation failed: {e}") from e

        raise StoreUnavailable(
            f"Redis operation failed after {attempts} attempt(s): {last_error}"
        ) from last_error

    def _record_key(self, fingerprint: str) -> str:
        """Get Redis key for a fingerprint's record."""
        return self.RECORD_KEY.format(prefix=self._key_prefix, fingerprint=fingerprint)

    def _due_key(self) -> str:
        """Get Redis key for the mute deadline index."""
        return self.DUE_INDEX_KEY.format(prefix=self._key_prefix)

    # ========== Atomic transitions (Lua) ==========

    async def observe(
        self,
        fingerprint: str,
        event: ErrorEvent,
        policy: BurstPolicy,
        now: datetime,
    ) -> Observation:
        occurred_at = event.occurred_at or now

        async def _observe():
            async with self._get_client():
                return await self._observe_script(
                    keys=[self._record_key(fingerprint), self._due_key()],
                    args=[
                        fingerprint,
                        event.source_service,
                        event.error_type,
                        event.error_message,
                        to_millis(occurred_at),
                        to_millis(now),
                        duration_millis(policy.quiet_window),
                        duration_millis(policy.mute_window),
                        duration_millis(policy.clock_tolerance),
                    ],
                )

        reply = await self._retry_operation(_observe, idempotent=False)

        verdict = Verdict(reply[0])
        clock_anomaly = int(reply[1]) == 1
        flushed_len = int(reply[2])
        flushed_items = reply[3:3 + flushed_len]
        record = record_from_hash(_pairs_to_dict(reply[3 + flushed_len:]))

        flushed = None
        if flushed_items:
            previous = record_from_hash(_pairs_to_dict(flushed_items))
            flushed = build_escalation_task(previous, now, EscalationTrigger.BURST_CLOSED)

        logger.debug(
            f"Observed {fingerprint}: {verdict.value} (count={record.occurrence_count})"
        )
        return Observation(
            record=record,
            verdict=verdict,
            clock_anomaly=clock_anomaly,
            flushed=flushed,
        )

    async def mark_escalated(
        self,
        fingerprint: str,
        now: datetime,
        trigger: EscalationTrigger = EscalationTrigger.SWEEP,
    ) -> Optional[EscalationTask]:
        async def _mark():
            async with self._get_client():
                return await self._mark_escalated_script(
                    keys=[self._record_key(fingerprint), self._due_key()],
                    args=[fingerprint, to_millis(now)],
                )

        reply = await self._retry_operation(_mark, idempotent=False)

        if not reply:
            return None

        record = record_from_hash(_pairs_to_dict(reply))
        logger.debug(f"Committed escalation for {fingerprint} ({trigger.value})")
        return build_escalation_task(record, now, trigger)

    # ========== Reads ==========

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[ErrorRecord]:
        async def _get():
            async with self._get_client() as client:
                return await client.hgetall(self._record_key(fingerprint))

        data = await self._retry_operation(_get)

        if not data:
            return None

        return record_from_hash(data)

    async def scan_due(self, now: datetime, limit: int = 500) -> List[ErrorRecord]:
        async def _scan():
            async with self._get_client() as client:
                fingerprints = await client.zrangebyscore(
                    self._due_key(),
                    min="-inf",
                    max=to_millis(now),
                    start=0,
                    num=limit
                )
                if not fingerprints:
                    return [], []

                pipe = client.pipeline(transaction=False)
                for fingerprint in fingerprints:
                    pipe.hgetall(self._record_key(fingerprint))
                return fingerprints, await pipe.execute()

        fingerprints, rows = await self._retry_operation(_scan)

        due = []
        stale = []
        for fingerprint, row in zip(fingerprints, rows):
            record = record_from_hash(row) if row else None
            if record is None or record.muted_until is None or record.escalation_sent:
                stale.append(fingerprint)
            elif is_escalation_due(record, now):
                due.append(record)

        if stale:
            await self._prune(stale)

        if due:
            logger.info(f"Found {len(due)} records with elapsed mute windows")

        return due

    async def _prune(self, fingerprints: List[str]) -> int:
        """Drop index entries whose record was deleted or already settled."""
        async def _run():
            async with self._get_client():
                return await self._prune_script(
                    keys=[self._due_key()] + [self._record_key(fp) for fp in fingerprints],
                    args=fingerprints,
                )

        removed = int(await self._retry_operation(_run))
        if removed:
            logger.info(f"Pruned {removed} stale entries from the mute deadline index")
        return removed

    # ========== Utility Methods ==========

    async def ping(self) -> bool:
        """
        Test Redis connection.

        Returns:
            True if connection is healthy

        Raises:
            StoreUnavailable: If ping fails
        """
        async def _ping():
            async with self._get_client() as client:
                return await client.ping()

        return await self._retry_operation(_ping)

