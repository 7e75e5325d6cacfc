"""
Utility modules for burstguard.
"""

from burstguard.utils.logging import (
    get_logger,
    setup_logging,
    log_decision,
    log_escalation,
    log_degradation,
    log_error_with_context,
)
from burstguard.utils.metrics import (
    EngineMetrics,
    track_ledger_call,
    emit_metric,
)
from burstguard.utils.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    retry_with_backoff,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "log_decision",
    "log_escalation",
    "log_degradation",
    "log_error_with_context",
    "EngineMetrics",
    "track_ledger_call",
    "emit_metric",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "retry_with_backoff",
]
