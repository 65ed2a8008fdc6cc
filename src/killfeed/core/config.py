"""
Killfeed Centralized Configuration

Provides validated, type-safe access to all environment variables using Pydantic Settings.
Settings are loaded once and cached; tests call reset_settings() after patching the
environment.

Usage:
    from killfeed.core.config import get_settings

    settings = get_settings()
    options = settings.retry_options(timeout=settings.detail_timeout_seconds)

Data Paths:
    All data is stored in {instance_root}/cache/:
    - cache/killfeed.db: Killmail store (events, attackers, checkpoints)

Environment Variables:
    KILLFEED_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    KILLFEED_DEBUG: Legacy debug flag (enables DEBUG level if set)
    KILLFEED_LOG_JSON: Output logs as JSON
    KILLFEED_INSTANCE_ROOT: Instance root override
    KILLFEED_DB_PATH: Explicit database path
    KILLFEED_NO_RETRY: Disable HTTP retry logic (single attempt per call)
    KILLFEED_ZKILL_BASE_URL / KILLFEED_ESI_BASE_URL: Service endpoints
    KILLFEED_REDISQ_BASE_URL / KILLFEED_REDISQ_QUEUE_ID: Live ingestion endpoint and queue
    KILLFEED_MAX_AGE_DAYS, KILLFEED_BACKFILL_MAX_PAGES, ...: Backfill bounds
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .retry import RetryOptions


def _find_project_env_file() -> Path | None:
    """
    Find .env file by searching for project root markers.

    Searches upward from this file's location for pyproject.toml,
    then checks for .env in that directory.

    Returns:
        Path to .env if found, None otherwise
    """
    current = Path(__file__).resolve().parent

    for _ in range(10):  # Limit search depth
        if (current / "pyproject.toml").exists():
            env_file = current / ".env"
            if env_file.exists():
                return env_file
            return None
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _find_instance_root() -> Path:
    """
    Find the instance root directory.

    Resolution order:
    1. KILLFEED_INSTANCE_ROOT environment variable (explicit override)
    2. Project root (directory containing pyproject.toml)
    3. Current working directory (fallback)
    """
    import os

    override = os.environ.get("KILLFEED_INSTANCE_ROOT")
    if override:
        return Path(override)

    current = Path(__file__).resolve().parent
    for _ in range(10):
        if (current / "pyproject.toml").exists():
            return current
        parent = current.parent
        if parent == current:
            break
        current = parent

    return Path.cwd()


_ENV_FILE = _find_project_env_file()
_INSTANCE_ROOT = _find_instance_root()


class KillfeedSettings(BaseSettings):
    """
    Killfeed configuration settings with validation.

    Environment variables are automatically loaded with the KILLFEED_ prefix.
    All settings have sensible defaults and validation.
    """

    model_config = SettingsConfigDict(
        env_prefix="KILLFEED_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Log level for killfeed components",
    )

    debug: bool = Field(
        default=False,
        description="Legacy debug flag (enables DEBUG level if set)",
    )

    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format for machine parsing",
    )

    # =========================================================================
    # Data Paths
    # =========================================================================

    instance_root: Path = Field(
        default=_INSTANCE_ROOT,
        description="Instance root directory (project root containing pyproject.toml)",
    )

    db_path: Optional[Path] = Field(
        default=None,
        description="Explicit killmail database path (defaults to cache/killfeed.db)",
    )

    # =========================================================================
    # External Services
    # =========================================================================

    zkill_base_url: str = Field(
        default="https://zkillboard.com/api",
        description="zKillboard API base URL (paginated feed + kill summaries)",
    )

    esi_base_url: str = Field(
        default="https://esi.evetech.net/latest",
        description="ESI base URL (authoritative killmail details)",
    )

    user_agent: str = Field(
        default="killfeed/1.0 (killmail backfill)",
        description="User-Agent header sent to both services",
    )

    # =========================================================================
    # Resilience (per service)
    # =========================================================================

    zkill_min_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum spacing between zKillboard requests",
    )

    esi_min_delay_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Minimum spacing between ESI requests",
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per HTTP call, including the first",
    )

    initial_retry_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Base delay before the first retry",
    )

    max_retry_delay_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound on backoff delay (before jitter)",
    )

    retry_jitter_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Maximum random jitter added to each backoff delay",
    )

    feed_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Per-attempt timeout for zKillboard requests",
    )

    detail_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-attempt timeout for ESI killmail requests",
    )

    breaker_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed calls that open a service circuit",
    )

    breaker_cooldown_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Time an open circuit waits before admitting a trial call",
    )

    no_retry: bool = Field(
        default=False,
        description="Disable HTTP retry logic (single attempt per call)",
    )

    # =========================================================================
    # Backfill
    # =========================================================================

    max_age_days: int = Field(
        default=30,
        ge=0,
        description="Retention boundary for backfill; older kills stop the run",
    )

    backfill_max_pages: int = Field(
        default=20,
        ge=1,
        description="Hard page limit per backfill run",
    )

    backfill_max_records: int = Field(
        default=500,
        ge=1,
        description="Hard limit on successful ingests per backfill run",
    )

    backfill_max_consecutive_empty: int = Field(
        default=5,
        ge=1,
        description="Consecutive empty pages that end a backfill run",
    )

    backfill_cooldown_minutes: int = Field(
        default=60,
        ge=0,
        description="Skip a backfill if the entity completed one this recently",
    )

    backfill_concurrency: int = Field(
        default=4,
        ge=1,
        description="Entities backfilled concurrently by backfill --all",
    )

    # =========================================================================
    # Live Ingestion (RedisQ)
    # =========================================================================

    redisq_base_url: str = Field(
        default="https://zkillredisq.stream",
        description="RedisQ base URL (long-poll endpoint is /listen.php)",
    )

    redisq_queue_id: str = Field(
        default="killfeed",
        min_length=1,
        description="RedisQ queue identifier; RedisQ tracks delivery per queue",
    )

    redisq_ttw_seconds: int = Field(
        default=10,
        ge=1,
        le=10,
        description="Seconds RedisQ holds a poll open waiting for a kill",
    )

    redisq_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-attempt timeout for RedisQ polls (must exceed the ttw)",
    )

    redisq_min_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum spacing between RedisQ polls",
    )

    redisq_error_backoff_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Pause after a poll that failed every retry",
    )

    tracked_refresh_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How often the listener reloads the tracked character set",
    )

    activity_log_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval between listener activity log lines",
    )

    # =========================================================================
    # Detail Cache
    # =========================================================================

    detail_cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Lifetime of cached ESI killmail payloads",
    )

    detail_cache_size: int = Field(
        default=1024,
        ge=1,
        description="Maximum cached ESI killmail payloads",
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str) -> str:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("zkill_base_url", "esi_base_url", "redisq_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def effective_log_level(self) -> str:
        """
        Get effective log level, respecting legacy KILLFEED_DEBUG.

        Priority:
        1. Explicit KILLFEED_LOG_LEVEL
        2. KILLFEED_DEBUG=1 -> DEBUG
        3. Default: WARNING
        """
        if self.debug and self.log_level == "WARNING":
            return "DEBUG"
        return self.log_level

    @property
    def log_level_int(self) -> int:
        """Get effective log level as logging constant."""
        return getattr(logging, self.effective_log_level)

    @property
    def cache_dir(self) -> Path:
        """Path to cache directory."""
        return self.instance_root / "cache"

    @property
    def killmail_db_path(self) -> Path:
        """Path to killmail database."""
        if self.db_path is not None:
            return self.db_path
        return self.cache_dir / "killfeed.db"

    def retry_options(self, timeout: float | None = None, description: str = "") -> RetryOptions:
        """
        Build retry options from the configured resilience settings.

        Args:
            timeout: Per-attempt timeout in seconds (service specific)
            description: Operation label used in retry log lines

        Returns:
            RetryOptions for one external service
        """
        from .retry import RetryOptions

        return RetryOptions(
            max_attempts=1 if self.no_retry else self.max_retries,
            base_delay=self.initial_retry_delay_seconds,
            max_delay=self.max_retry_delay_seconds,
            jitter=self.retry_jitter_seconds,
            timeout=timeout,
            description=description,
        )


# =============================================================================
# Singleton Accessor
# =============================================================================


@lru_cache(maxsize=1)
def get_settings() -> KillfeedSettings:
    """
    Get the singleton settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    The settings are validated at first access.
    """
    return KillfeedSettings()


def reset_settings() -> None:
    """
    Reset the settings cache (for testing).

    After calling this, the next get_settings() call will
    reload settings from environment variables.
    """
    get_settings.cache_clear()


# =============================================================================
# Convenience Functions
# =============================================================================


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled."""
    return get_settings().effective_log_level == "DEBUG"


def is_json_logging() -> bool:
    """Check if JSON logging is enabled."""
    return get_settings().log_json


def is_retry_disabled() -> bool:
    """Check if retry logic is disabled via environment."""
    return get_settings().no_retry
