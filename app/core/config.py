"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Default request budgets when RATE_LIMIT_MAX_REQUESTS is not set
DEVELOPMENT_MAX_REQUESTS = 10000
PRODUCTION_MAX_REQUESTS = 100

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_log_settings() -> "LogSettings":
    """Build logging settings from environment."""

    return LogSettings()


def _build_rate_limit_settings() -> "RateLimitSettings":
    """Build rate limit settings from environment.

    Nested BaseSettings are created through a factory so each one reads its
    own env prefix when the container is instantiated.
    """

    return RateLimitSettings()


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log output: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated log files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Request rate limiting configuration."""

    enabled: bool = Field(
        True,
        description="Enable per-client rate limiting on every request",
    )
    window_ms: int = Field(
        15 * 60 * 1000,
        description="Trailing window length in milliseconds",
        ge=1,
    )
    max_requests: int | None = Field(
        None,
        description=(
            "Maximum requests per client per window; defaults to "
            f"{DEVELOPMENT_MAX_REQUESTS} in development and "
            f"{PRODUCTION_MAX_REQUESTS} elsewhere"
        ),
        ge=1,
    )
    redis_url: str | None = Field(
        None,
        description="Redis connection URL; selects the shared store when set",
        validation_alias=AliasChoices("rate_limit_redis_url", "redis_url"),
    )
    store_max_retries: int = Field(
        3,
        description="Redis connection retries before failing open",
        ge=0,
    )
    store_timeout_seconds: float = Field(
        1.0,
        description="Redis socket timeout in seconds",
        gt=0,
    )
    key_prefix: str = Field(
        "rate_limit:",
        description="Namespace for rate limit keys in Redis",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers on admitted responses",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the first X-Forwarded-For address as the client key",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
        populate_by_name=True,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.

    Environments:
    - development: Local development (generous rate limit budget)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    log: LogSettings = Field(default_factory=_build_log_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    @property
    def rate_limit_max_requests(self) -> int:
        """Effective per-window budget after applying the environment default."""

        if self.rate_limit.max_requests is not None:
            return self.rate_limit.max_requests
        if self.is_development:
            return DEVELOPMENT_MAX_REQUESTS
        return PRODUCTION_MAX_REQUESTS


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
