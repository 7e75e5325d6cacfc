"""
Application configuration management.
"""

from datetime import timedelta
from typing import Optional

from pydantic_settings import BaseSettings

from burstguard.models.record import BurstPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis ledger
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "burstguard"
    redis_max_connections: int = 10

    # Burst windows
    quiet_window_seconds: int = 300
    mute_window_seconds: int = 1800
    clock_tolerance_seconds: int = 3600

    # Hot-path cache
    cache_enabled: bool = True
    cache_max_entries: int = 10000
    cache_ttl_seconds: Optional[int] = None  # Falls back to mute_window_seconds

    # Fingerprinting
    canonicalization: str = "identity"

    # Failure handling
    store_failure_policy: str = "allow"  # 'allow' or 'cached'
    ledger_timeout_seconds: float = 2.0
    notifier_timeout_seconds: float = 10.0

    # Sweep worker
    sweep_interval_seconds: int = 30
    sweep_batch_size: int = 500

    # Escalation delivery
    escalation_webhook_url: Optional[str] = None
    summary_max_message_chars: int = 500

    # Application
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def burst_policy(self) -> BurstPolicy:
        """Build the burst policy from the configured windows."""
        return BurstPolicy(
            quiet_window=timedelta(seconds=self.quiet_window_seconds),
            mute_window=timedelta(seconds=self.mute_window_seconds),
            clock_tolerance=timedelta(seconds=self.clock_tolerance_seconds),
        )

    def effective_cache_ttl(self) -> float:
        """Cache TTL in seconds; one mute cycle unless overridden."""
        if self.cache_ttl_seconds is not None:
            return float(self.cache_ttl_seconds)
        return float(self.mute_window_seconds)


# Global settings instance
settings = Settings()
