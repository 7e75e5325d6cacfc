"""Ledger observation and engine decision data models."""

from typing import List, Optional

from pydantic import BaseModel

from .escalation import EscalationTask
from .record import BurstState, ErrorRecord, Verdict


class Observation(BaseModel):
    """Outcome of one atomic ledger observe call."""

    record: ErrorRecord
    verdict: Verdict
    clock_anomaly: bool = False
    flushed: Optional[EscalationTask] = None


class Decision(BaseModel):
    """Engine answer for one ingested event."""

    verdict: Verdict
    fingerprint: str
    record: Optional[ErrorRecord] = None  # None when the ledger was unavailable
    state: BurstState = BurstState.NONE
    degraded: bool = False
    reason: str = ""
    predicted_verdict: Optional[Verdict] = None
    escalations: List[EscalationTask] = []
