"""
Escalation Notifier component.

Composes a bounded summary for a committed escalation and hands it to a
delivery channel. The escalation flag is already committed in the ledger when
the notifier runs, so a failed delivery is logged and counted but never
retried: at most one summary per burst reaches the channel.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

import httpx

from burstguard.errors import NotifierError
from burstguard.models.escalation import DeliveryResult, EscalationSummary, EscalationTask
from burstguard.utils.logging import get_logger, log_error_with_context, log_escalation
from burstguard.utils.metrics import EngineMetrics

logger = get_logger(__name__)


def format_duration(value: timedelta) -> str:
    """Render a duration as e.g. '1h 2m' or '45s'."""
    total = int(max(value, timedelta(0)).total_seconds())
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds and not hours:
        parts.append(f"{seconds}s")
    return " ".join(parts) or "0s"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:max(limit - 3, 0)] + "..."


class DeliveryChannel(ABC):
    """Outbound transport for escalation summaries."""

    name = "channel"

    @abstractmethod
    async def deliver(self, summary: EscalationSummary) -> None:
        """
        Deliver one summary.

        Raises:
            Exception: Any transport failure; the notifier absorbs it
        """
        pass

    async def close(self) -> None:
        pass


class LoggingChannel(DeliveryChannel):
    """Emits summaries as structured log records."""

    name = "log"

    def __init__(self):
        self._logger = get_logger("burstguard.escalations")

    async def deliver(self, summary: EscalationSummary) -> None:
        self._logger.warning(
            summary.title,
            extra={
                "fingerprint": summary.fingerprint,
                "summary": summary.text,
                "fields": summary.fields,
            }
        )


class WebhookChannel(DeliveryChannel):
    """POSTs summaries as JSON to a webhook URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def deliver(self, summary: EscalationSummary) -> None:
        client = await self._get_client()
        response = await client.post(self.url, json=summary.model_dump(mode="json"))
        response.raise_for_status()
        logger.debug(
            f"Webhook accepted escalation ({response.status_code})",
            extra={"fingerprint": summary.fingerprint}
        )

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None


class EscalationNotifier:
    """Composes escalation summaries and dispatches them to a channel."""

    def __init__(
        self,
        channel: Optional[DeliveryChannel] = None,
        timeout: float = 10.0,
        max_message_chars: int = 500,
        metrics: Optional[EngineMetrics] = None,
    ):
        """
        Args:
            channel: Delivery channel (LoggingChannel when None)
            timeout: Upper bound in seconds for one delivery
            max_message_chars: Error message length kept in the summary
            metrics: Shared metrics collector
        """
        self.channel = channel or LoggingChannel()
        self.timeout = timeout
        self.max_message_chars = max_message_chars
        self.metrics = metrics

    def compose(self, task: EscalationTask) -> EscalationSummary:
        """Build the bounded summary for a task."""
        suppressed_for = format_duration(task.suppression_duration)
        title = (
            f"[{task.source_service}] {task.error_type}: "
            f"{task.burst_count} occurrence(s) in burst, muted for {suppressed_for}"
        )
        message = truncate(task.error_message, self.max_message_chars)

        fields = {
            "service": task.source_service,
            "error_type": task.error_type,
            "total_occurrences": str(task.occurrence_count),
            "burst_occurrences": str(task.burst_count),
            "first_seen_at": task.first_seen_at.isoformat(),
            "last_seen_at": task.last_seen_at.isoformat(),
            "burst_started_at": task.burst_started_at.isoformat(),
            "mute_window_end": task.mute_window_end.isoformat(),
            "suppressed_for": suppressed_for,
            "trigger": task.trigger.value,
        }

        text = "\n".join([
            message,
            "",
            f"Total occurrences: {task.occurrence_count} "
            f"(this burst: {task.burst_count})",
            f"First seen: {fields['first_seen_at']}",
            f"Last seen: {fields['last_seen_at']}",
            f"Suppressed for: {suppressed_for}",
        ])

        return EscalationSummary(
            fingerprint=task.fingerprint,
            title=title,
            text=text,
            fields=fields,
        )

    async def notify(self, task: EscalationTask) -> DeliveryResult:
        """
        Compose and deliver the summary for a committed escalation.

        Never raises for delivery problems; they are logged as NotifierError
        and reported in the result.
        """
        summary = self.compose(task)

        try:
            await asyncio.wait_for(self.channel.deliver(summary), timeout=self.timeout)

        except asyncio.TimeoutError:
            error = NotifierError(f"delivery via {self.channel.name} timed out after {self.timeout}s")
            return self._failed(task, error)

        except Exception as e:
            error = NotifierError(f"delivery via {self.channel.name} failed: {e}")
            error.__cause__ = e
            return self._failed(task, error)

        log_escalation(
            logger,
            fingerprint=task.fingerprint,
            source_service=task.source_service,
            error_type=task.error_type,
            trigger=task.trigger.value,
            occurrence_count=task.occurrence_count,
            delivered=True,
        )
        return DeliveryResult(success=True, channel=self.channel.name)

    def _failed(self, task: EscalationTask, error: NotifierError) -> DeliveryResult:
        if self.metrics:
            self.metrics.record_notifier_failure()

        log_error_with_context(
            logger,
            f"Escalation delivery failed for {task.source_service}/{task.error_type}",
            error,
            fingerprint=task.fingerprint,
            trigger=task.trigger.value,
            channel=self.channel.name,
        )
        return DeliveryResult(success=False, channel=self.channel.name, error=str(error))

    async def close(self) -> None:
        await self.channel.close()
