"""
JudgeSync - Configuration

Settings are read from the process environment (prefix ``JUDGESYNC_``).
The CLI loads a ``.env`` file with python-dotenv before the first call to
``get_settings()``; the Settings class itself never reads env files, so tests
and workers see exactly what is in ``os.environ``.

Usage:
    from judgesync.config import get_settings

    settings = get_settings()
    limiter = RateLimiter(hourly_limit=settings.rate_limit_per_hour)
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_COURTLISTENER_URL = "https://www.courtlistener.com/api/rest/v4"


class Settings(BaseSettings):
    """Runtime settings for workers, the validator and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="JUDGESYNC_",
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT
    # =========================================================================

    environment: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    database_url: Optional[str] = Field(
        default=None,
        description="Postgres connection string",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Emit JSON logs instead of console format")

    # =========================================================================
    # UPSTREAM API
    # =========================================================================

    courtlistener_base_url: str = Field(
        default=DEFAULT_COURTLISTENER_URL,
        description="Base URL of the CourtListener REST API",
    )
    courtlistener_api_key: Optional[SecretStr] = Field(
        default=None,
        description="API token sent as 'Authorization: Token <key>'",
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    max_retries: int = Field(default=3, ge=0, le=10, description="Client-level retries per call")
    retry_base_seconds: float = Field(default=1.0, gt=0)
    retry_max_wait_seconds: float = Field(default=30.0, gt=0)

    # =========================================================================
    # RATE LIMIT / CIRCUIT BREAKER
    # =========================================================================

    rate_limit_per_hour: int = Field(default=5000, ge=1)
    rate_limit_safety_ratio: float = Field(default=0.9, gt=0, le=1)
    rate_limit_warning_threshold: int = Field(default=4000, ge=1)
    rate_limit_max_wait_seconds: float = Field(default=60.0, ge=0)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_cooldown_seconds: float = Field(default=60.0, gt=0)

    # =========================================================================
    # QUEUE
    # =========================================================================

    queue_max_attempts: int = Field(default=5, ge=1, le=50)
    queue_backoff_base_seconds: float = Field(default=60.0, gt=0)
    queue_backoff_max_seconds: float = Field(default=3600.0, gt=0)
    queue_poll_interval_seconds: float = Field(default=5.0, gt=0)
    queue_lease_seconds: int = Field(default=900, ge=1, description="Stale claim recovery window")
    queue_retention_days: int = Field(default=30, ge=1)

    # =========================================================================
    # SYNC PIPELINES
    # =========================================================================

    judge_discovery_limit: int = Field(default=250, ge=1, description="Judges discovered per run")
    max_documents_per_judge: int = Field(
        default=500,
        ge=1,
        description="Opinion + docket documents fetched per judge per run",
    )

    # =========================================================================
    # DATA QUALITY
    # =========================================================================

    stale_judge_days: int = Field(default=180, ge=1)
    stale_court_days: int = Field(default=365, ge=1)
    min_cases_for_analytics: int = Field(default=500, ge=1)
    case_count_drift_medium: int = Field(default=5, ge=0)
    case_count_drift_high: int = Field(default=20, ge=0)
    autofix_min_confidence: int = Field(default=80, ge=0, le=100)
    health_score_window: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.case_count_drift_high < self.case_count_drift_medium:
            raise ValueError("case_count_drift_high must be >= case_count_drift_medium")
        if self.queue_backoff_max_seconds < self.queue_backoff_base_seconds:
            raise ValueError("queue_backoff_max_seconds must be >= queue_backoff_base_seconds")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"

    @property
    def effective_hourly_limit(self) -> int:
        """Hourly quota after the safety margin is applied."""
        return int(self.rate_limit_per_hour * self.rate_limit_safety_ratio)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()
