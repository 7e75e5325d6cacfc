"""
Burst state machine.

Pure transition functions over ErrorRecord. The in-memory ledger applies them
directly; the Redis ledger runs the same rules inside its Lua scripts. Nothing
here performs I/O or reads the wall clock: callers pass ``now`` explicitly.

States are never stored. They are derived from the record:

    NONE -> ACTIVE -> MUTED -> ESCALATION_DUE -> ESCALATED
                 ^_______________________________|  (next fresh event)
"""

from datetime import datetime
from typing import Optional, Tuple

from burstguard.errors import ClockAnomaly
from burstguard.models.decision import Observation
from burstguard.models.escalation import EscalationTask, EscalationTrigger
from burstguard.models.event import ErrorEvent
from burstguard.models.record import BurstPolicy, BurstState, ErrorRecord, Verdict


def derive_state(record: Optional[ErrorRecord], now: datetime) -> BurstState:
    """Derive the logical burst state of a record at ``now``."""
    if record is None:
        return BurstState.NONE
    if record.muted_until is None:
        return BurstState.ACTIVE
    if record.escalation_sent:
        return BurstState.ESCALATED
    if record.muted_until <= now:
        return BurstState.ESCALATION_DUE
    return BurstState.MUTED


def is_escalation_due(record: Optional[ErrorRecord], now: datetime) -> bool:
    """True when the record's mute has elapsed and nobody has escalated it yet."""
    return derive_state(record, now) == BurstState.ESCALATION_DUE


def resolve_event_time(
    occurred_at: datetime,
    now: datetime,
    last_seen_at: Optional[datetime],
    policy: BurstPolicy,
) -> datetime:
    """
    Return the event time to use for the transition.

    Raises:
        ClockAnomaly: If the declared time is too far in the future relative
            to ``now`` or too far in the past relative to ``last_seen_at``
    """
    if occurred_at > now + policy.clock_tolerance:
        raise ClockAnomaly(
            f"event time {occurred_at.isoformat()} is ahead of receipt time "
            f"{now.isoformat()} by more than {policy.clock_tolerance}"
        )
    if last_seen_at is not None and occurred_at < last_seen_at - policy.clock_tolerance:
        raise ClockAnomaly(
            f"event time {occurred_at.isoformat()} is behind last seen "
            f"{last_seen_at.isoformat()} by more than {policy.clock_tolerance}"
        )
    return occurred_at


def starts_new_burst(record: ErrorRecord, t: datetime, policy: BurstPolicy) -> bool:
    """
    True when an event at ``t`` opens a fresh burst on an existing record.

    The gap since the last occurrence must exceed the quiet window and the
    event must arrive after any active mute; an event landing inside the mute
    window is still a duplicate of the burst that set it.
    """
    if t - record.last_seen_at <= policy.quiet_window:
        return False
    return record.muted_until is None or t > record.muted_until


def build_escalation_task(
    record: ErrorRecord,
    now: datetime,
    trigger: EscalationTrigger,
) -> EscalationTask:
    """Snapshot a muted record into an escalation task."""
    return EscalationTask(
        fingerprint=record.fingerprint,
        source_service=record.source_service,
        error_type=record.error_type,
        error_message=record.error_message,
        occurrence_count=record.occurrence_count,
        first_seen_at=record.first_seen_at,
        last_seen_at=record.last_seen_at,
        mute_window_end=record.muted_until or now,
        burst_started_at=record.burst_started_at,
        burst_count=record.burst_count,
        escalated_at=now,
        trigger=trigger,
    )


def observe_transition(
    record: Optional[ErrorRecord],
    fingerprint: str,
    event: ErrorEvent,
    policy: BurstPolicy,
    now: datetime,
) -> Observation:
    """
    Apply one occurrence to a record.

    Args:
        record: Current record, or None on first occurrence
        fingerprint: Fingerprint of the event
        event: Event with a canonicalized message
        policy: Burst windows
        now: Receipt time

    Returns:
        Observation with the updated record and verdict
    """
    occurred_at = event.occurred_at or now
    last_seen_at = record.last_seen_at if record is not None else None

    clock_anomaly = False
    try:
        t = resolve_event_time(occurred_at, now, last_seen_at, policy)
    except ClockAnomaly:
        t = now
        clock_anomaly = True

    if record is None:
        created = ErrorRecord(
            fingerprint=fingerprint,
            source_service=event.source_service,
            error_type=event.error_type,
            error_message=event.error_message,
            first_seen_at=t,
            last_seen_at=t,
            burst_started_at=t,
        )
        return Observation(record=created, verdict=Verdict.ALLOW, clock_anomaly=clock_anomaly)

    new_last_seen = max(record.last_seen_at, t)

    if clock_anomaly or starts_new_burst(record, t, policy):
        # Fresh burst. A previous cycle that was muted but never escalated
        # is closed here so its summary is not lost.
        flushed = None
        escalation_sent_at = record.escalation_sent_at
        if record.muted_until is not None and not record.escalation_sent:
            flushed = build_escalation_task(record, now, EscalationTrigger.BURST_CLOSED)
            escalation_sent_at = now

        updated = record.model_copy(update={
            "last_seen_at": new_last_seen,
            "occurrence_count": record.occurrence_count + 1,
            "muted_until": None,
            "escalation_sent": False,
            "escalation_sent_at": escalation_sent_at,
            "burst_started_at": t,
            "burst_count": 1,
        })
        return Observation(
            record=updated,
            verdict=Verdict.ALLOW,
            clock_anomaly=clock_anomaly,
            flushed=flushed,
        )

    muted_until = t + policy.mute_window
    if record.muted_until is not None and record.muted_until > muted_until:
        muted_until = record.muted_until

    updated = record.model_copy(update={
        "last_seen_at": new_last_seen,
        "occurrence_count": record.occurrence_count + 1,
        "muted_until": muted_until,
        "burst_count": record.burst_count + 1,
    })
    return Observation(record=updated, verdict=Verdict.MUTE)


def escalation_transition(
    record: Optional[ErrorRecord],
    now: datetime,
    trigger: EscalationTrigger = EscalationTrigger.SWEEP,
) -> Tuple[Optional[ErrorRecord], Optional[EscalationTask]]:
    """
    Commit the escalation for a record whose mute has elapsed.

    Idempotent: a second call on the returned record yields no task.

    Returns:
        Tuple of (record after the transition, task or None)
    """
    if not is_escalation_due(record, now):
        return record, None

    updated = record.model_copy(update={
        "escalation_sent": True,
        "escalation_sent_at": now,
    })
    return updated, build_escalation_task(updated, now, trigger)


def predict_verdict(
    record: Optional[ErrorRecord],
    occurred_at: datetime,
    policy: BurstPolicy,
    now: datetime,
) -> Verdict:
    """Verdict the ledger would return for ``record`` as currently known."""
    if record is None:
        return Verdict.ALLOW
    try:
        t = resolve_event_time(occurred_at, now, record.last_seen_at, policy)
    except ClockAnomaly:
        return Verdict.ALLOW
    if starts_new_burst(record, t, policy):
        return Verdict.ALLOW
    return Verdict.MUTE
