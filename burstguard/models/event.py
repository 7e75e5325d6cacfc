"""Incoming error event data models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from burstguard.utils.clock import ensure_utc


class ErrorEvent(BaseModel):
    """One error occurrence reported by a producer."""

    source_service: str
    error_type: str
    error_message: str
    occurred_at: Optional[datetime] = None  # Defaults to receipt time

    @field_validator("source_service", "error_type", "error_message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("occurred_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None
