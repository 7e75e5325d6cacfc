"""
Time helpers shared by the engine and the ledgers.

All timestamps inside burstguard are timezone-aware UTC datetimes. The Redis
ledger persists them as integer epoch milliseconds.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_millis(value: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds (truncated)."""
    return (ensure_utc(value) - EPOCH) // _ONE_MS


def from_millis(value: int) -> datetime:
    """Convert integer epoch milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=int(value))


def duration_millis(value: timedelta) -> int:
    """Convert a duration to whole milliseconds."""
    return value // _ONE_MS
