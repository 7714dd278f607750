"""
Tests for judgesync.config settings loading.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from judgesync.config import DEFAULT_COURTLISTENER_URL, Settings, get_settings, reset_settings


class TestDefaults:
    def test_documented_defaults(self):
        settings = Settings()

        assert settings.database_url is None
        assert settings.courtlistener_base_url == DEFAULT_COURTLISTENER_URL
        assert settings.rate_limit_per_hour == 5000
        assert settings.rate_limit_safety_ratio == 0.9
        assert settings.effective_hourly_limit == 4500
        assert settings.queue_max_attempts == 5
        assert settings.stale_judge_days == 180
        assert settings.stale_court_days == 365
        assert settings.min_cases_for_analytics == 500
        assert settings.autofix_min_confidence == 80
        assert settings.health_score_window == 5
        assert not settings.is_production


class TestEnvironment:
    def test_reads_prefixed_variables(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("JUDGESYNC_DATABASE_URL", "postgresql://localhost/judgesync")
        monkeypatch.setenv("JUDGESYNC_RATE_LIMIT_PER_HOUR", "1000")
        monkeypatch.setenv("JUDGESYNC_ENVIRONMENT", "prod")

        settings = Settings()

        assert settings.database_url == "postgresql://localhost/judgesync"
        assert settings.rate_limit_per_hour == 1000
        assert settings.is_production

    def test_api_key_is_secret(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("JUDGESYNC_COURTLISTENER_API_KEY", "abc123")

        settings = Settings()

        assert settings.courtlistener_api_key.get_secret_value() == "abc123"
        assert "abc123" not in repr(settings)

    def test_get_settings_is_cached_until_reset(self, monkeypatch: pytest.MonkeyPatch):
        first = get_settings()
        monkeypatch.setenv("JUDGESYNC_MAX_RETRIES", "7")

        assert get_settings() is first
        reset_settings()
        assert get_settings().max_retries == 7


class TestValidation:
    @pytest.mark.parametrize(
        "key,value",
        [
            ("JUDGESYNC_RATE_LIMIT_SAFETY_RATIO", "1.5"),
            ("JUDGESYNC_AUTOFIX_MIN_CONFIDENCE", "101"),
            ("JUDGESYNC_QUEUE_MAX_ATTEMPTS", "0"),
            ("JUDGESYNC_ENVIRONMENT", "qa"),
        ],
    )
    def test_out_of_range_values_rejected(self, monkeypatch: pytest.MonkeyPatch, key: str, value: str):
        monkeypatch.setenv(key, value)

        with pytest.raises(ValidationError):
            Settings()

    def test_drift_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            Settings(case_count_drift_medium=30, case_count_drift_high=20)

    def test_backoff_cap_must_exceed_base(self):
        with pytest.raises(ValidationError):
            Settings(queue_backoff_base_seconds=600, queue_backoff_max_seconds=60)
