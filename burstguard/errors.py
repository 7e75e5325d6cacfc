"""
Exception taxonomy for the decision engine.

Validation errors surface to the caller. Store, notifier and clock problems
are absorbed by the engine and reported through logs and metrics.
"""

from typing import Any, Dict, List, Optional


class BurstguardError(Exception):
    """Base class for all burstguard errors."""
    pass


class EventValidationError(BurstguardError, ValueError):
    """Raised when an incoming event is malformed. No record is touched."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class StoreUnavailable(BurstguardError):
    """Raised when the ledger cannot complete an operation."""
    pass


class NotifierError(BurstguardError):
    """Raised when an escalation summary could not be delivered."""
    pass


class ClockAnomaly(BurstguardError):
    """Event time is outside the tolerated bounds."""
    pass
