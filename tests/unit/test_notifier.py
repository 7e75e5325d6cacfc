"""
Unit tests for the escalation notifier and delivery channels.
"""

import asyncio
import json
import logging
from datetime import timedelta

import httpx
import pytest

from burstguard.models.escalation import EscalationTask, EscalationTrigger
from burstguard.services.notifier import (
    DeliveryChannel,
    EscalationNotifier,
    LoggingChannel,
    WebhookChannel,
    format_duration,
    truncate,
)
from burstguard.utils.metrics import EngineMetrics

from conftest import at


def make_task(**overrides) -> EscalationTask:
    data = {
        "fingerprint": "fp-billing-timeout",
        "source_service": "billing",
        "error_type": "Timeout",
        "error_message": "db timeout",
        "occurrence_count": 3,
        "first_seen_at": at(0),
        "last_seen_at": at(31),
        "mute_window_end": at(61),
        "burst_started_at": at(0),
        "burst_count": 3,
        "escalated_at": at(62),
        "trigger": EscalationTrigger.SWEEP,
    }
    data.update(overrides)
    return EscalationTask(**data)


class SlowChannel(DeliveryChannel):
    name = "slow"

    async def deliver(self, summary):
        await asyncio.sleep(1)


class RaisingChannel(DeliveryChannel):
    name = "raising"

    async def deliver(self, summary):
        raise RuntimeError("boom")


@pytest.mark.parametrize("value,expected", [
    (timedelta(0), "0s"),
    (timedelta(seconds=45), "45s"),
    (timedelta(minutes=32), "32m"),
    (timedelta(hours=1, minutes=1, seconds=5), "1h 1m"),
    (timedelta(seconds=-5), "0s"),
])
def test_format_duration(value, expected):
    """Test human readable durations."""
    assert format_duration(value) == expected


def test_truncate():
    """Test message truncation."""
    assert truncate("short", 10) == "short"
    assert truncate("a" * 20, 10) == "aaaaaaa..."


class TestCompose:
    """Test summary composition."""

    def test_summary_fields(self):
        notifier = EscalationNotifier()

        summary = notifier.compose(make_task())

        assert summary.fingerprint == "fp-billing-timeout"
        assert summary.title == "[billing] Timeout: 3 occurrence(s) in burst, muted for 1h 1m"
        assert summary.fields["total_occurrences"] == "3"
        assert summary.fields["first_seen_at"] == at(0).isoformat()
        assert summary.fields["last_seen_at"] == at(31).isoformat()
        assert summary.fields["trigger"] == "sweep"
        assert summary.text.startswith("db timeout\n")
        assert "Total occurrences: 3 (this burst: 3)" in summary.text

    def test_long_message_is_bounded(self):
        notifier = EscalationNotifier(max_message_chars=50)

        summary = notifier.compose(make_task(error_message="x" * 5000))

        assert len(summary.text.splitlines()[0]) == 50
        assert len(summary.text) < 500


class TestNotify:
    """Test delivery and failure handling."""

    @pytest.mark.asyncio
    async def test_logging_channel(self, caplog):
        notifier = EscalationNotifier(channel=LoggingChannel())

        with caplog.at_level(logging.WARNING, logger="burstguard.escalations"):
            result = await notifier.notify(make_task())

        assert result.success is True
        assert result.channel == "log"
        assert "[billing] Timeout" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self):
        metrics = EngineMetrics()
        notifier = EscalationNotifier(channel=SlowChannel(), timeout=0.05, metrics=metrics)

        result = await notifier.notify(make_task())

        assert result.success is False
        assert "timed out" in result.error
        assert metrics.notifier_failures == 1

    @pytest.mark.asyncio
    async def test_channel_error_is_absorbed(self, caplog):
        metrics = EngineMetrics()
        notifier = EscalationNotifier(channel=RaisingChannel(), metrics=metrics)

        with caplog.at_level(logging.ERROR):
            result = await notifier.notify(make_task())

        assert result.success is False
        assert "boom" in result.error
        assert metrics.notifier_failures == 1
        assert "Escalation delivery failed" in caplog.text


class TestWebhookChannel:
    """Test the webhook channel against a mock transport."""

    @pytest.mark.asyncio
    async def test_posts_summary_json(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        channel = WebhookChannel(
            "https://hooks.example.com/escalations",
            headers={"Authorization": "Bearer token"},
            transport=httpx.MockTransport(handler),
        )
        notifier = EscalationNotifier(channel=channel)

        result = await notifier.notify(make_task())
        await notifier.close()

        assert result.success is True
        assert result.channel == "webhook"
        assert len(requests) == 1
        assert requests[0].method == "POST"
        assert requests[0].headers["Authorization"] == "Bearer token"
        body = json.loads(requests[0].content)
        assert body["fingerprint"] == "fp-billing-timeout"
        assert body["fields"]["service"] == "billing"

    @pytest.mark.asyncio
    async def test_server_error_fails_delivery(self):
        channel = WebhookChannel(
            "https://hooks.example.com/escalations",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        metrics = EngineMetrics()
        notifier = EscalationNotifier(channel=channel, metrics=metrics)

        result = await notifier.notify(make_task())
        await notifier.close()

        assert result.success is False
        assert "500" in result.error
        assert metrics.notifier_failures == 1
