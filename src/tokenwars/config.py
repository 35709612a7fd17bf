"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
TokenWars competition engine, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    price_ttl_seconds: int = Field(
        default=120,
        alias="REDIS_PRICE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL for cached latest prices",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class PriceSourceSettings(BaseSettings):
    """Settings for the fetch-prices edge function."""

    model_config = SettingsConfigDict(env_prefix="PRICE_SOURCE_", extra="ignore")

    base_url: str = Field(
        default="http://localhost:54321",
        alias="PRICE_SOURCE_BASE_URL",
        description="Base URL of the backend hosting the fetch-prices function",
    )
    anon_key: SecretStr | None = Field(
        default=None,
        alias="PRICE_SOURCE_ANON_KEY",
        description="Anonymous API key sent as bearer token",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="PRICE_SOURCE_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="HTTP timeout per request",
    )
    requests_per_second: float = Field(
        default=5.0,
        alias="PRICE_SOURCE_REQUESTS_PER_SECOND",
        gt=0.0,
        le=100.0,
        description="Client-side rate limit",
    )
    max_retries: int = Field(
        default=3,
        alias="PRICE_SOURCE_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries on transient errors (exponential backoff)",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("PRICE_SOURCE_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class AutomationSettings(BaseSettings):
    """Automated competition creation settings."""

    model_config = SettingsConfigDict(env_prefix="AUTOMATION_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="AUTOMATION_ENABLED",
        description="Create competitions automatically",
    )
    max_concurrent_competitions: int = Field(
        default=10,
        alias="AUTOMATION_MAX_CONCURRENT_COMPETITIONS",
        ge=1,
        le=1000,
        description="Upper bound on SETUP/VOTING/ACTIVE competitions",
    )
    auto_create_interval_hours: float = Field(
        default=1.0,
        alias="AUTOMATION_AUTO_CREATE_INTERVAL_HOURS",
        ge=0.0,
        le=24 * 30,
        description="Minimum gap between automated creations (hours)",
    )
    voting_duration_minutes: float = Field(
        default=10.0,
        alias="AUTOMATION_VOTING_DURATION_MINUTES",
        gt=0.0,
        le=7 * 24 * 60,
        description="Length of the voting phase (minutes)",
    )
    active_duration_hours: float = Field(
        default=1.0,
        alias="AUTOMATION_ACTIVE_DURATION_HOURS",
        gt=0.0,
        le=24 * 30,
        description="Length of the active phase (hours)",
    )
    start_delay_minutes: int = Field(
        default=5,
        alias="AUTOMATION_START_DELAY_MINUTES",
        ge=0,
        le=24 * 60,
        description="Delay between creation and the voting phase (minutes)",
    )
    tick_seconds: int = Field(
        default=30,
        alias="AUTOMATION_TICK_SECONDS",
        ge=1,
        le=3600,
        description="How often the automation policy is evaluated",
    )
    max_failures: int = Field(
        default=5,
        alias="AUTOMATION_MAX_FAILURES",
        ge=1,
        le=100,
        description="Consecutive failures before automation disables itself",
    )

    @property
    def auto_create_interval(self) -> timedelta:
        return timedelta(hours=self.auto_create_interval_hours)

    @property
    def voting_duration(self) -> timedelta:
        return timedelta(minutes=self.voting_duration_minutes)

    @property
    def active_duration(self) -> timedelta:
        return timedelta(hours=self.active_duration_hours)

    @property
    def start_delay(self) -> timedelta:
        return timedelta(minutes=self.start_delay_minutes)


class CompetitionSettings(BaseSettings):
    """Per-competition economics and resolution settings."""

    model_config = SettingsConfigDict(env_prefix="COMPETITION_", extra="ignore")

    bet_amount: Decimal = Field(
        default=Decimal("0.1"),
        alias="COMPETITION_BET_AMOUNT",
        description="Fixed stake per bet (SOL)",
    )
    platform_fee_percentage: Decimal = Field(
        default=Decimal("15"),
        alias="COMPETITION_PLATFORM_FEE_PERCENTAGE",
        ge=Decimal("0"),
        lt=Decimal("100"),
        description="Platform fee taken from the pool before payouts",
    )
    twap_window_minutes: int = Field(
        default=10,
        alias="COMPETITION_TWAP_WINDOW_MINUTES",
        ge=1,
        le=24 * 60,
        description="Length of the start and end TWAP windows",
    )
    transition_retry_seconds: int = Field(
        default=30,
        alias="COMPETITION_TRANSITION_RETRY_SECONDS",
        ge=1,
        le=3600,
        description="Delay before retrying a failed phase transition",
    )
    market_cap_tolerance: float = Field(
        default=0.10,
        alias="COMPETITION_MARKET_CAP_TOLERANCE",
        ge=0.0,
        le=10.0,
        description="Maximum relative market cap difference for a pair",
    )

    @field_validator("bet_amount")
    @classmethod
    def validate_bet_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("COMPETITION_BET_AMOUNT must be > 0")
        return v


class SamplerSettings(BaseSettings):
    """Price sampler cadence and retention."""

    model_config = SettingsConfigDict(env_prefix="SAMPLER_", extra="ignore")

    active_interval_seconds: int = Field(
        default=5,
        alias="SAMPLER_ACTIVE_INTERVAL_SECONDS",
        ge=1,
        le=3600,
        description="Sampling interval for tokens in active competitions",
    )
    background_interval_seconds: int = Field(
        default=60,
        alias="SAMPLER_BACKGROUND_INTERVAL_SECONDS",
        ge=5,
        le=86_400,
        description="Refresh interval for pinned tokens and retention pruning",
    )
    retention_hours: int = Field(
        default=24,
        alias="SAMPLER_RETENTION_HOURS",
        ge=1,
        le=24 * 365,
        description="Samples older than this are pruned unless the token is pinned",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from tokenwars.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.automation.max_concurrent_competitions)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price_source: PriceSourceSettings = Field(
        default_factory=lambda: PriceSourceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    automation: AutomationSettings = Field(
        default_factory=lambda: AutomationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    competition: CompetitionSettings = Field(
        default_factory=lambda: CompetitionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sampler: SamplerSettings = Field(
        default_factory=lambda: SamplerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    startup_timeout_seconds: float = Field(
        default=10.0,
        alias="STARTUP_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="How long to wait for the database before running degraded",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run without delivering operator alerts",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "price_source": {
                "base_url": self.price_source.base_url,
                "anon_key": "(set)" if self.price_source.anon_key else "(not set)",
                "requests_per_second": str(self.price_source.requests_per_second),
                "max_retries": str(self.price_source.max_retries),
            },
            "automation": {
                "enabled": str(self.automation.enabled),
                "max_concurrent_competitions": str(self.automation.max_concurrent_competitions),
                "auto_create_interval_hours": str(self.automation.auto_create_interval_hours),
                "voting_duration_minutes": str(self.automation.voting_duration_minutes),
                "active_duration_hours": str(self.automation.active_duration_hours),
            },
            "competition": {
                "bet_amount": str(self.competition.bet_amount),
                "platform_fee_percentage": str(self.competition.platform_fee_percentage),
                "twap_window_minutes": str(self.competition.twap_window_minutes),
            },
            "sampler": {
                "active_interval_seconds": str(self.sampler.active_interval_seconds),
                "background_interval_seconds": str(self.sampler.background_interval_seconds),
                "retention_hours": str(self.sampler.retention_hours),
            },
            "log_level": self.log_level,
            "startup_timeout_seconds": str(self.startup_timeout_seconds),
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
