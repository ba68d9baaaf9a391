"""
Tests for Configuration Module

Tests for storyreel/core/config.py
"""

import pytest

from storyreel.core.config import Settings, get_settings
from storyreel.core.retry import PollPolicy, calculate_delay


class TestSettingsDefaults:
    """Tests for default settings values."""

    def test_default_poll_policies(self):
        """Test the clip, final and image poll policies."""
        settings = Settings(_env_file=None)

        assert settings.poll_policy("clip") == PollPolicy(interval=30, max_attempts=60, initial_delay=60)
        assert settings.poll_policy("final") == PollPolicy(interval=15, max_attempts=120, initial_delay=15)
        assert settings.poll_policy("image") == PollPolicy(interval=5, max_attempts=60, initial_delay=5)

    def test_clip_poll_ceiling(self):
        """Test the clip ceiling covers the initial wait plus every poll."""
        policy = Settings(_env_file=None).poll_policy("clip")

        assert policy.ceiling_seconds == 60 + 30 * 60

    def test_unknown_poll_policy(self):
        """Test an unknown job kind is rejected."""
        with pytest.raises(ValueError):
            Settings(_env_file=None).poll_policy("audio")

    def test_stage_retry_is_fixed_backoff(self):
        """Test stage workers get three tries with a constant 30s wait."""
        retry = Settings(_env_file=None).stage_retry()

        assert retry.max_retries == 2
        assert calculate_delay(0, retry) == 30
        assert calculate_delay(1, retry) == 30

    def test_clip_defaults(self):
        """Test default clip parameters."""
        settings = Settings(_env_file=None)

        assert settings.clip_duration == "5"
        assert settings.clip_mode == "pro"
        assert settings.auto_generate_clips is False
        assert settings.data_file == ""


class TestSettingsEnvironment:
    """Tests for environment overrides."""

    def test_env_prefix_override(self, monkeypatch):
        """Test STORYREEL_* variables override defaults."""
        monkeypatch.setenv("STORYREEL_CLIP_POLL_INTERVAL", "10")
        monkeypatch.setenv("STORYREEL_MAX_WORKERS", "8")

        settings = Settings(_env_file=None)

        assert settings.clip_poll_interval == 10.0
        assert settings.max_workers == 8

    def test_get_settings_is_cached(self):
        """Test get_settings returns one shared instance."""
        assert get_settings() is get_settings()
