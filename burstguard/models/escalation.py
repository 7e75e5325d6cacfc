"""Escalation task and delivery data models."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel


class EscalationTrigger(str, Enum):
    """What committed the escalation."""

    EVENT = "event"
    SWEEP = "sweep"
    BURST_CLOSED = "burst_closed"


class EscalationTask(BaseModel):
    """One-time summary request for a muted burst."""

    fingerprint: str
    source_service: str
    error_type: str
    error_message: str
    occurrence_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    mute_window_end: datetime
    burst_started_at: datetime
    burst_count: int
    escalated_at: datetime
    trigger: EscalationTrigger = EscalationTrigger.SWEEP

    @property
    def suppression_duration(self) -> timedelta:
        """How long the burst has been suppressed."""
        return max(self.mute_window_end - self.burst_started_at, timedelta(0))


class EscalationSummary(BaseModel):
    """Channel-neutral summary composed from an escalation task."""

    fingerprint: str
    title: str
    text: str
    fields: Dict[str, str] = {}


class DeliveryResult(BaseModel):
    """Result of handing a summary to a delivery channel."""

    success: bool
    channel: str
    error: Optional[str] = None
