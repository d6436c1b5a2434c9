"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
copy-trade tracker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from copytrade_tracker.errors import ConfigurationError

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_BINANCE_BASE_URL = "https://www.binance.com/bapi/futures/v1"
MAX_ORDER_PAGE_SIZE = 100


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings for the latest-payload cache."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    enabled: bool = Field(
        default=False,
        alias="REDIS_ENABLED",
        description="Cache the latest payload per lead in Redis",
    )
    payload_ttl_seconds: int = Field(
        default=600,
        alias="REDIS_PAYLOAD_TTL_SECONDS",
        ge=10,
        le=7 * 24 * 3600,
        description="TTL for cached lead payloads",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ScraperSettings(BaseSettings):
    """Binance copy-trade scraper and scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="SCRAPER_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="SCRAPER_ENABLED",
        description="Enable the periodic ingestion scheduler",
    )
    interval_ms: int = Field(
        default=60_000,
        alias="SCRAPER_INTERVAL_MS",
        ge=1_000,
        le=24 * 3600 * 1000,
        description="Interval between ticks (milliseconds)",
    )
    concurrency: int = Field(
        default=5,
        alias="SCRAPER_CONCURRENCY",
        ge=1,
        le=100,
        description="Maximum leads fetched in parallel per tick",
    )
    order_page_size: int = Field(
        default=100,
        alias="SCRAPER_ORDER_PAGE_SIZE",
        ge=1,
        le=MAX_ORDER_PAGE_SIZE,
        description="Order history rows requested per lead (exchange maximum is 100)",
    )
    timeout_ms: int = Field(
        default=15_000,
        alias="SCRAPER_TIMEOUT_MS",
        ge=100,
        le=300_000,
        description="Timeout per upstream sub-request (milliseconds)",
    )
    lead_ids_raw: str = Field(
        default="",
        alias="SCRAPER_LEAD_IDS",
        description="Comma-separated lead portfolio ids",
    )
    base_url: str = Field(
        default=DEFAULT_BINANCE_BASE_URL,
        alias="SCRAPER_BASE_URL",
        description="Binance futures bapi root",
    )
    time_range: str = Field(
        default="30D",
        alias="SCRAPER_TIME_RANGE",
        description="Time range passed to ROI / asset preference endpoints",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("SCRAPER_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @property
    def lead_ids(self) -> list[str]:
        """Configured lead ids, de-duplicated in declaration order."""
        seen: dict[str, None] = {}
        for part in self.lead_ids_raw.split(","):
            lead_id = part.strip()
            if lead_id:
                seen.setdefault(lead_id, None)
        return list(seen)

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


class PositioningSettings(BaseSettings):
    """Position timing settings used by the query service."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    use_estimated_open_time: bool = Field(
        default=True,
        alias="USE_ESTIMATED_OPEN_TIME",
        description="Use estimated_open_time (else first_seen_at) as the position open time",
    )
    sort_order: Literal["newest", "oldest"] = Field(
        default="newest",
        alias="POSITION_SORT_ORDER",
        description="Ordering of position lists by open time",
    )
    recently_opened_max_hours: int = Field(
        default=24,
        alias="RECENTLY_OPENED_MAX_HOURS",
        ge=1,
        le=24 * 30,
        description="Upper bound accepted for the recently-opened heatmap filter",
    )


class Settings(BaseSettings):
    """Main application settings.

    Aggregates all configuration groups and provides application-level
    settings.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
        case_sensitive=False,
    )

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
    scraper: ScraperSettings = Field(
        default_factory=lambda: ScraperSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    positioning: PositioningSettings = Field(
        default_factory=lambda: PositioningSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
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
            "redis": {
                "url": self._redact_url(self.redis.url),
                "enabled": str(self.redis.enabled),
            },
            "scraper": {
                "enabled": str(self.scraper.enabled),
                "interval_ms": str(self.scraper.interval_ms),
                "concurrency": str(self.scraper.concurrency),
                "order_page_size": str(self.scraper.order_page_size),
                "timeout_ms": str(self.scraper.timeout_ms),
                "lead_count": str(len(self.scraper.lead_ids)),
                "base_url": self.scraper.base_url,
            },
            "positioning": {
                "use_estimated_open_time": str(self.positioning.use_estimated_open_time),
                "sort_order": self.positioning.sort_order,
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "ingest-once", "init-db"]) -> None:
        """Validate command-specific requirements.

        An enabled scheduler without leads is allowed (ticks are no-ops),
        but a one-shot ingest without leads has nothing to do.
        """
        if command == "run" and self.scraper.enabled and not self.scraper.lead_ids:
            logging.getLogger(__name__).warning(
                "SCRAPER_LEAD_IDS is empty; scheduler ticks will be no-ops"
            )
        if command == "ingest-once" and not self.scraper.lead_ids:
            raise ConfigurationError("SCRAPER_LEAD_IDS is required for ingest-once")

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
