"""
Unit tests for configuration management.
"""

import os
from datetime import timedelta
from unittest.mock import patch

from burstguard.config import Settings


def test_settings_loads_from_environment():
    """Test that settings can be loaded from environment variables."""
    with patch.dict(os.environ, {
        'REDIS_URL': 'redis://cache:6379/2',
        'QUIET_WINDOW_SECONDS': '120',
        'MUTE_WINDOW_SECONDS': '600',
        'CANONICALIZATION': 'trim,lowercase',
        'STORE_FAILURE_POLICY': 'cached',
        'ESCALATION_WEBHOOK_URL': 'https://hooks.example.com/x',
        'LOG_LEVEL': 'DEBUG',
    }):
        settings = Settings()

        assert settings.redis_url == 'redis://cache:6379/2'
        assert settings.quiet_window_seconds == 120
        assert settings.mute_window_seconds == 600
        assert settings.canonicalization == 'trim,lowercase'
        assert settings.store_failure_policy == 'cached'
        assert settings.escalation_webhook_url == 'https://hooks.example.com/x'
        assert settings.log_level == 'DEBUG'


def test_settings_has_default_values():
    """Test that settings have appropriate default values."""
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.quiet_window_seconds == 300
        assert settings.mute_window_seconds == 1800
        assert settings.clock_tolerance_seconds == 3600
        assert settings.cache_enabled is True
        assert settings.store_failure_policy == 'allow'
        assert settings.escalation_webhook_url is None
        assert settings.log_level == 'INFO'


def test_burst_policy_from_settings():
    """Test conversion of configured windows into a burst policy."""
    settings = Settings(_env_file=None, quiet_window_seconds=60, mute_window_seconds=900)

    policy = settings.burst_policy()

    assert policy.quiet_window == timedelta(minutes=1)
    assert policy.mute_window == timedelta(minutes=15)
    assert policy.clock_tolerance == timedelta(hours=1)


def test_cache_ttl_defaults_to_mute_window():
    """Test that the cache TTL follows the mute window unless overridden."""
    settings = Settings(_env_file=None, mute_window_seconds=900)
    assert settings.effective_cache_ttl() == 900.0

    settings = Settings(_env_file=None, mute_window_seconds=900, cache_ttl_seconds=60)
    assert settings.effective_cache_ttl() == 60.0
