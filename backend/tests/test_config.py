"""Tests for courier/config.py: Settings validation."""
from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from courier.config import Settings


class TestTimingValidation:
    """The lease must outlive a full delivery (content resolve + notice)."""

    def test_lease_shorter_than_two_io_timeouts_raises(self):
        with pytest.raises(ValueError, match="LEASE_TTL_SECONDS"):
            Settings(_env_file=None, io_timeout_seconds=30, lease_ttl_seconds=60)

    def test_lease_longer_than_two_io_timeouts_passes(self):
        s = Settings(_env_file=None, io_timeout_seconds=30, lease_ttl_seconds=61)
        assert s.lease_ttl_seconds == 61

    def test_defaults_are_consistent(self):
        s = Settings(_env_file=None)
        assert s.lease_ttl_seconds > 2 * s.io_timeout_seconds


class TestThresholds:
    @pytest.mark.parametrize(
        "field",
        [
            "checkin_missed_threshold",
            "posthumous_required_confirmations",
            "max_delivery_attempts",
            "verification_max_rounds",
            "notifier_max_attempts",
            "scheduler_concurrency",
        ],
    )
    def test_zero_is_rejected(self, field):
        with pytest.raises(ValueError, match=field.upper()):
            Settings(_env_file=None, **{field: 0})

    def test_grace_period_defaults_to_none(self):
        assert Settings(_env_file=None).checkin_grace_period_hours == 0

    def test_negative_grace_period_is_rejected(self):
        with pytest.raises(ValueError, match="CHECKIN_GRACE_PERIOD_HOURS"):
            Settings(_env_file=None, checkin_grace_period_hours=-1)


class TestEnvironment:
    def test_values_come_from_environment(self):
        env = {
            "MAX_DELIVERY_ATTEMPTS": "7",
            "VERIFICATION_VETO_MODE": "1",
            "SMTP_HOST": "mail.example.com",
        }
        with patch.dict(os.environ, env, clear=False):
            s = Settings(_env_file=None)
        assert s.max_delivery_attempts == 7
        assert s.verification_veto_mode is True
        assert s.smtp_host == "mail.example.com"

    def test_content_dir_lives_under_data_dir(self):
        s = Settings(_env_file=None, data_dir=Path("/srv/courier"))
        assert s.content_dir == Path("/srv/courier/content")
