"""
Decision Engine component.

Turns one error event into an ALLOW/MUTE verdict:

    validate -> fingerprint -> cache peek -> Ledger.observe (atomic)
             -> escalation check -> notifier

The engine holds no locks and no authoritative state. Per-fingerprint
serialization belongs to the ledger, so any number of engine instances can
share one ledger.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Mapping, Optional, TypeVar, Union

from pydantic import ValidationError

from burstguard.errors import EventValidationError, StoreUnavailable
from burstguard.models.decision import Decision
from burstguard.models.escalation import EscalationTask, EscalationTrigger
from burstguard.models.event import ErrorEvent
from burstguard.models.record import BurstPolicy, BurstState, ErrorRecord, Verdict
from burstguard.services.fingerprint import Fingerprinter
from burstguard.services.ledger import Ledger
from burstguard.services.notifier import EscalationNotifier
from burstguard.services.state_machine import derive_state, is_escalation_due, predict_verdict
from burstguard.utils.clock import Clock, ensure_utc, utcnow
from burstguard.utils.logging import get_logger, log_decision, log_degradation, log_escalation
from burstguard.utils.metrics import EngineMetrics, track_ledger_call
from burstguard.utils.resilience import CircuitBreaker

logger = get_logger(__name__)

T = TypeVar("T")

STORE_FAILURE_POLICIES = ("allow", "cached")


class DecisionEngine:
    """Per-fingerprint allow/mute decisions with exactly-once escalation."""

    def __init__(
        self,
        ledger: Ledger,
        notifier: Optional[EscalationNotifier] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        policy: Optional[BurstPolicy] = None,
        clock: Clock = utcnow,
        ledger_timeout: float = 2.0,
        store_failure_policy: str = "allow",
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[EngineMetrics] = None,
        sweep_batch_size: int = 500,
    ):
        """
        Args:
            ledger: Authoritative ledger (optionally wrapped in CachedLedger)
            notifier: Escalation notifier; escalations are only committed and
                logged when None
            fingerprinter: Fingerprinter (identity canonicalization when None)
            policy: Burst windows
            clock: Source of receipt time
            ledger_timeout: Upper bound in seconds for one ledger call
            store_failure_policy: 'allow' (fail open) or 'cached' (use the
                cache prediction when one exists, else allow)
            circuit_breaker: Optional breaker in front of ledger calls
            metrics: Metrics collector
            sweep_batch_size: Max records per sweep pass
        """
        if store_failure_policy not in STORE_FAILURE_POLICIES:
            raise ValueError(
                f"store_failure_policy must be one of {STORE_FAILURE_POLICIES}, "
                f"got {store_failure_policy!r}"
            )

        self.ledger = ledger
        self.metrics = metrics or EngineMetrics()
        self.notifier = notifier
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.policy = policy or BurstPolicy()
        self.clock = clock
        self.ledger_timeout = ledger_timeout
        self.store_failure_policy = store_failure_policy
        self.circuit_breaker = circuit_breaker
        self.sweep_batch_size = sweep_batch_size

    # ========== Ingestion ==========

    async def ingest(self, event: Union[ErrorEvent, Mapping[str, Any]]) -> Decision:
        """
        Decide whether to forward or suppress one error occurrence.

        Args:
            event: ErrorEvent or mapping with source_service, error_type,
                error_message and optional occurred_at

        Returns:
            Decision carrying the verdict

        Raises:
            EventValidationError: If the event is malformed
        """
        event = self._validate(event)
        now = self.clock()
        occurred_at = event.occurred_at or now

        fingerprint, canonical = self.fingerprinter.compute(
            event.source_service, event.error_type, event.error_message
        )
        event = event.model_copy(update={"error_message": canonical, "occurred_at": occurred_at})

        cached = await self.ledger.peek(fingerprint)
        predicted = predict_verdict(cached, occurred_at, self.policy, now) if cached else None

        try:
            async with track_ledger_call(self.metrics, "observe"):
                observation = await self._ledger_call(
                    lambda: self.ledger.observe(fingerprint, event, self.policy, now)
                )
        except StoreUnavailable as e:
            return self._degraded_decision(fingerprint, event, predicted, e)

        record = observation.record
        verdict = observation.verdict
        self.metrics.record_verdict(verdict.value)
        if predicted is not None:
            self.metrics.record_prediction(predicted.value, verdict.value)

        reason = self._reason(verdict, record)
        if observation.clock_anomaly:
            self.metrics.record_clock_anomaly()
            reason = "clock anomaly: event time out of bounds, treated as new burst"
            logger.warning(
                f"Clock anomaly for {event.source_service}/{event.error_type}: "
                f"declared {occurred_at.isoformat()}, received {now.isoformat()}",
                extra={"fingerprint": fingerprint, "occurred_at": occurred_at.isoformat()}
            )

        log_decision(
            logger,
            fingerprint=fingerprint,
            source_service=event.source_service,
            error_type=event.error_type,
            verdict=verdict.value,
            occurrence_count=record.occurrence_count,
            reason=reason,
        )

        escalations: List[EscalationTask] = []
        if observation.flushed is not None:
            escalations.append(observation.flushed)
            await self._dispatch(observation.flushed)

        if is_escalation_due(record, now):
            task = await self.check_escalation(fingerprint, now, EscalationTrigger.EVENT)
            if task is not None:
                escalations.append(task)
                record = record.model_copy(update={
                    "escalation_sent": True,
                    "escalation_sent_at": task.escalated_at,
                })

        return Decision(
            verdict=verdict,
            fingerprint=fingerprint,
            record=record,
            state=derive_state(record, now),
            reason=reason,
            predicted_verdict=predicted,
            escalations=escalations,
        )

    def _validate(self, event: Union[ErrorEvent, Mapping[str, Any]]) -> ErrorEvent:
        if isinstance(event, ErrorEvent):
            return event
        try:
            return ErrorEvent.model_validate(event)
        except ValidationError as e:
            self.metrics.record_validation_error()
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise EventValidationError(
                f"Invalid error event ({fields})", errors=e.errors()
            ) from e

    def _reason(self, verdict: Verdict, record: ErrorRecord) -> str:
        if verdict == Verdict.MUTE:
            return (
                f"duplicate within quiet window; muted until "
                f"{record.muted_until.isoformat()} ({record.burst_count} in burst)"
            )
        if record.occurrence_count == 1:
            return "first occurrence"
        return "new burst after quiet window"

    def _degraded_decision(
        self,
        fingerprint: str,
        event: ErrorEvent,
        predicted: Optional[Verdict],
        error: Exception,
    ) -> Decision:
        """Fail-open decision when the ledger cannot answer."""
        if self.store_failure_policy == "cached" and predicted is not None:
            verdict = predicted
            fallback = f"cached prediction ({predicted.value})"
        else:
            verdict = Verdict.ALLOW
            fallback = "allow"

        self.metrics.record_degradation()
        self.metrics.record_verdict(verdict.value)
        log_degradation(
            logger,
            operation="observe",
            error=error,
            fallback=fallback,
            fingerprint=fingerprint,
            source_service=event.source_service,
            error_type=event.error_type,
        )

        return Decision(
            verdict=verdict,
            fingerprint=fingerprint,
            degraded=True,
            reason=f"ledger unavailable, {fallback}",
            predicted_verdict=predicted,
        )

    # ========== Escalation ==========

    async def check_escalation(
        self,
        fingerprint: str,
        now: Optional[datetime] = None,
        trigger: EscalationTrigger = EscalationTrigger.SWEEP,
    ) -> Optional[EscalationTask]:
        """
        Commit and dispatch the escalation for one fingerprint if it is due.

        Shared by the event path and the sweep. The ledger's atomic flag flip
        decides the winner, so concurrent callers produce at most one task.

        Returns:
            The task when this call committed it, None otherwise
        """
        now = ensure_utc(now) if now is not None else self.clock()

        try:
            async with track_ledger_call(self.metrics, "mark_escalated"):
                task = await self._ledger_call(
                    lambda: self.ledger.mark_escalated(fingerprint, now, trigger)
                )
        except StoreUnavailable as e:
            self.metrics.record_degradation()
            log_degradation(
                logger,
                operation="mark_escalated",
                error=e,
                fallback="retry on next sweep",
                fingerprint=fingerprint,
            )
            return None

        if task is not None:
            await self._dispatch(task)
        return task

    async def _dispatch(self, task: EscalationTask) -> None:
        """Hand a committed task to the notifier. Delivery failures are absorbed there."""
        self.metrics.record_escalation(task.trigger.value)
        log_escalation(
            logger,
            fingerprint=task.fingerprint,
            source_service=task.source_service,
            error_type=task.error_type,
            trigger=task.trigger.value,
            occurrence_count=task.occurrence_count,
        )
        if self.notifier is not None:
            await self.notifier.notify(task)

    async def sweep(self, now: Optional[datetime] = None) -> List[EscalationTask]:
        """
        Escalate every record whose mute has elapsed without further events.

        Returns:
            Tasks committed by this pass
        """
        now = ensure_utc(now) if now is not None else self.clock()

        try:
            async with track_ledger_call(self.metrics, "scan_due"):
                due = await self._ledger_call(
                    lambda: self.ledger.scan_due(now, self.sweep_batch_size)
                )
        except StoreUnavailable as e:
            self.metrics.record_degradation()
            log_degradation(logger, operation="scan_due", error=e, fallback="skip sweep pass")
            return []

        tasks = []
        for record in due:
            task = await self.check_escalation(record.fingerprint, now, EscalationTrigger.SWEEP)
            if task is not None:
                tasks.append(task)

        if due:
            logger.info(
                f"Sweep committed {len(tasks)}/{len(due)} due escalation(s)",
                extra={"due": len(due), "committed": len(tasks)}
            )
        return tasks

    # ========== Ledger access ==========

    async def _ledger_call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run one ledger call under the timeout and circuit breaker.

        Raises:
            StoreUnavailable: On timeout, open circuit or store failure
        """
        async def _bounded() -> T:
            try:
                return await asyncio.wait_for(func(), timeout=self.ledger_timeout)
            except asyncio.TimeoutError as e:
                raise StoreUnavailable(
                    f"ledger call timed out after {self.ledger_timeout}s"
                ) from e

        if self.circuit_breaker is not None:
            return await self.circuit_breaker.call(_bounded)
        return await _bounded()

    async def get_state(self, fingerprint: str, now: Optional[datetime] = None) -> BurstState:
        """Derive the current burst state of a fingerprint from the ledger."""
        now = ensure_utc(now) if now is not None else self.clock()
        record = await self._ledger_call(lambda: self.ledger.find_by_fingerprint(fingerprint))
        return derive_state(record, now)


def create_engine(settings=None) -> DecisionEngine:
    """
    Build a fully wired engine from settings.

    Returns:
        DecisionEngine backed by Redis, cached when enabled
    """
    if settings is None:
        from burstguard.config import settings

    from burstguard.services.cache import CachedLedger, DecisionCache
    from burstguard.services.notifier import LoggingChannel, WebhookChannel
    from burstguard.services.redis_ledger import RedisLedger
    from burstguard.utils.resilience import create_ledger_circuit_breaker

    ledger: Ledger = RedisLedger(
        redis_url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        max_connections=settings.redis_max_connections,
        connection_timeout=settings.ledger_timeout_seconds,
    )
    if settings.cache_enabled:
        ledger = CachedLedger(
            ledger,
            DecisionCache(
                max_entries=settings.cache_max_entries,
                ttl=settings.effective_cache_ttl(),
            ),
        )

    if settings.escalation_webhook_url:
        channel = WebhookChannel(
            settings.escalation_webhook_url,
            timeout=settings.notifier_timeout_seconds,
        )
    else:
        channel = LoggingChannel()

    metrics = EngineMetrics()
    notifier = EscalationNotifier(
        channel=channel,
        timeout=settings.notifier_timeout_seconds,
        max_message_chars=settings.summary_max_message_chars,
        metrics=metrics,
    )

    return DecisionEngine(
        ledger=ledger,
        notifier=notifier,
        fingerprinter=Fingerprinter(settings.canonicalization),
        policy=settings.burst_policy(),
        ledger_timeout=settings.ledger_timeout_seconds,
        store_failure_policy=settings.store_failure_policy,
        circuit_breaker=create_ledger_circuit_breaker(),
        metrics=metrics,
        sweep_batch_size=settings.sweep_batch_size,
    )
