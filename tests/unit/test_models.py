"""
Unit tests for data models.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from burstguard.models import BurstPolicy, ErrorEvent, ErrorRecord

from conftest import at


def test_event_normalizes_naive_time_to_utc():
    """Test that naive timestamps are read as UTC."""
    event = ErrorEvent(
        source_service="billing",
        error_type="Timeout",
        error_message="db timeout",
        occurred_at=datetime(2024, 1, 1, 12, 0),
    )

    assert event.occurred_at.tzinfo is not None
    assert event.occurred_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_event_converts_offset_time():
    """Test that aware timestamps are converted to UTC."""
    event = ErrorEvent(
        source_service="billing",
        error_type="Timeout",
        error_message="db timeout",
        occurred_at="2024-01-01T14:00:00+02:00",
    )

    assert event.occurred_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_event_time_is_optional():
    event = ErrorEvent(source_service="billing", error_type="Timeout", error_message="x")

    assert event.occurred_at is None


@pytest.mark.parametrize("field", ["quiet_window", "mute_window", "clock_tolerance"])
def test_policy_windows_must_be_positive(field):
    """Test burst policy validation."""
    with pytest.raises(ValidationError):
        BurstPolicy(**{field: timedelta(0)})


def test_record_counts_are_validated():
    """Test record count invariants."""
    base = {
        "fingerprint": "fp",
        "source_service": "billing",
        "error_type": "Timeout",
        "error_message": "db timeout",
        "first_seen_at": at(0),
        "last_seen_at": at(0),
        "burst_started_at": at(0),
    }

    with pytest.raises(ValidationError):
        ErrorRecord(**base, occurrence_count=0)

    with pytest.raises(ValidationError):
        ErrorRecord(**base, occurrence_count=2, burst_count=3)

    assert ErrorRecord(**base, occurrence_count=3, burst_count=2).burst_count == 2
