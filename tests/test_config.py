"""
Tests for environment-driven settings.
"""

import os
from unittest.mock import patch

from url_finder.config import Settings


class TestSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)
        assert settings.min_content_length_bytes == 8 * 1024**3
        assert settings.max_concurrent_probes == 20
        assert settings.deal_sample_cap == 100
        assert settings.reliability_timeout_threshold == 0.30
        assert settings.discovery_interval_hours == 24
        assert settings.discovery_retry_delay_minutes == 15
        assert settings.bms_test_interval_days == 7
        assert settings.bms_url is None
        assert settings.database_url.startswith("sqlite+aiosqlite")

    def test_environment_overrides(self):
        env = {
            "MIN_CONTENT_LENGTH_BYTES": "1024",
            "MAX_CONCURRENT_PROBES": "5",
            "BMS_URL": "http://bms.internal",
            "DATABASE_URL": "postgresql+asyncpg://u:p@db/url_finder",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings(_env_file=None)
        assert settings.min_content_length_bytes == 1024
        assert settings.max_concurrent_probes == 5
        assert settings.bms_url == "http://bms.internal"
        assert settings.database_url.startswith("postgresql+asyncpg")
