"""
Metrics collection and emission for observability.

This module provides counters for:
- Verdicts (allow/mute) and cache prediction agreement
- Escalations by trigger and delivery failures
- Ledger degradations and clock anomalies
- Ledger call latency
"""

import time
from contextlib import asynccontextmanager
from threading import Lock
from typing import Any, Dict, Optional

from burstguard.utils.logging import get_logger

logger = get_logger(__name__)


class EngineMetrics:
    """
    In-process counters for one engine instance.

    Counters are cumulative since construction; ``get_metrics_summary``
    returns a snapshot suitable for logging or a health endpoint.
    """

    def __init__(self):
        self._lock = Lock()
        self.verdicts: Dict[str, int] = {"allow": 0, "mute": 0}
        self.escalations: Dict[str, int] = {}
        self.notifier_failures: int = 0
        self.degradations: int = 0
        self.clock_anomalies: int = 0
        self.validation_errors: int = 0
        self.predictions: Dict[str, int] = {"agreed": 0, "disagreed": 0}
        self.ledger_latencies: Dict[str, Dict[str, float]] = {}

    def record_verdict(self, verdict: str) -> None:
        with self._lock:
            self.verdicts[verdict] = self.verdicts.get(verdict, 0) + 1

    def record_prediction(self, predicted: str, actual: str) -> None:
        """Record whether the cache-derived verdict matched the ledger's."""
        with self._lock:
            key = "agreed" if predicted == actual else "disagreed"
            self.predictions[key] += 1

    def record_escalation(self, trigger: str) -> None:
        with self._lock:
            self.escalations[trigger] = self.escalations.get(trigger, 0) + 1

    def record_notifier_failure(self) -> None:
        with self._lock:
            self.notifier_failures += 1

    def record_degradation(self) -> None:
        with self._lock:
            self.degradations += 1

    def record_clock_anomaly(self) -> None:
        with self._lock:
            self.clock_anomalies += 1

    def record_validation_error(self) -> None:
        with self._lock:
            self.validation_errors += 1

    def record_ledger_call(self, operation: str, duration_ms: float) -> None:
        """
        Record ledger call latency.

        Args:
            operation: Ledger operation (e.g. 'observe', 'mark_escalated')
            duration_ms: Call duration in milliseconds
        """
        with self._lock:
            stats = self.ledger_latencies.get(operation)
            if stats is None:
                self.ledger_latencies[operation] = {
                    "count": 1,
                    "total_ms": duration_ms,
                    "min_ms": duration_ms,
                    "max_ms": duration_ms,
                }
                return
            stats["count"] += 1
            stats["total_ms"] += duration_ms
            stats["min_ms"] = min(stats["min_ms"], duration_ms)
            stats["max_ms"] = max(stats["max_ms"], duration_ms)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """
        Get summary of collected metrics.

        Returns:
            Dictionary of metrics
        """
        with self._lock:
            summary: Dict[str, Any] = {
                "verdicts": dict(self.verdicts),
                "escalations": dict(self.escalations),
                "notifier_failures": self.notifier_failures,
                "degradations": self.degradations,
                "clock_anomalies": self.clock_anomalies,
                "validation_errors": self.validation_errors,
                "predictions": dict(self.predictions),
            }

            latency_stats = {}
            for operation, stats in self.ledger_latencies.items():
                latency_stats[operation] = {
                    "count": int(stats["count"]),
                    "min_ms": round(stats["min_ms"], 2),
                    "max_ms": round(stats["max_ms"], 2),
                    "avg_ms": round(stats["total_ms"] / stats["count"], 2),
                }
            if latency_stats:
                summary["ledger_latencies"] = latency_stats

        return summary


@asynccontextmanager
async def track_ledger_call(
    metrics: Optional[EngineMetrics],
    operation: str
):
    """
    Context manager to track ledger call timing.

    Usage:
        async with track_ledger_call(metrics, "observe"):
            observation = await ledger.observe(...)

    Args:
        metrics: Metrics collector (optional)
        operation: Ledger operation name
    """
    start_time = time.perf_counter()

    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        if metrics:
            metrics.record_ledger_call(operation, duration_ms)


def emit_metric(metric_name: str, value: float, **tags: Any) -> None:
    """
    Emit a metric as a structured log line for the monitoring pipeline.

    Args:
        metric_name: Metric name
        value: Metric value
        **tags: Metric tags/labels
    """
    logger.info(
        f"Metric: {metric_name}",
        extra={
            "metric_name": metric_name,
            "metric_value": value,
            "metric_tags": tags,
        }
    )
