"""Data models for the burstguard decision engine."""

from .decision import Decision, Observation
from .escalation import (
    DeliveryResult,
    EscalationSummary,
    EscalationTask,
    EscalationTrigger,
)
from .event import ErrorEvent
from .record import BurstPolicy, BurstState, ErrorRecord, Verdict

__all__ = [
    # Event models
    "ErrorEvent",
    # Record models
    "ErrorRecord",
    "BurstPolicy",
    "BurstState",
    "Verdict",
    # Escalation models
    "EscalationTask",
    "EscalationTrigger",
    "EscalationSummary",
    "DeliveryResult",
    # Engine models
    "Observation",
    "Decision",
]
