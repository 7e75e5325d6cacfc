"""Ledger record and burst policy data models."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator


class Verdict(str, Enum):
    """Forwarding decision for one occurrence."""

    ALLOW = "allow"
    MUTE = "mute"


class BurstState(str, Enum):
    """Logical per-fingerprint state, derived from the record."""

    NONE = "none"
    ACTIVE = "active"
    MUTED = "muted"
    ESCALATION_DUE = "escalation_due"
    ESCALATED = "escalated"


class BurstPolicy(BaseModel):
    """Windows that drive the burst state machine."""

    quiet_window: timedelta = timedelta(minutes=5)
    mute_window: timedelta = timedelta(minutes=30)
    clock_tolerance: timedelta = timedelta(hours=1)

    @field_validator("quiet_window", "mute_window", "clock_tolerance")
    @classmethod
    def _positive(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("window must be positive")
        return value


class ErrorRecord(BaseModel):
    """Summarized ledger state for one fingerprint."""

    fingerprint: str
    source_service: str
    error_type: str
    error_message: str
    first_seen_at: datetime
    last_seen_at: datetime
    occurrence_count: int = 1
    muted_until: Optional[datetime] = None
    escalation_sent: bool = False
    escalation_sent_at: Optional[datetime] = None
    burst_started_at: datetime
    burst_count: int = 1

    @model_validator(mode="after")
    def _check_counts(self) -> "ErrorRecord":
        if self.occurrence_count < 1 or self.burst_count < 1:
            raise ValueError("occurrence counts must be >= 1")
        if self.burst_count > self.occurrence_count:
            raise ValueError("burst_count cannot exceed occurrence_count")
        return self
