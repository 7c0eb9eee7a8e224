"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Rate limit rules are configured as a JSON list, e.g.::

    APP_RATE_LIMIT_RULES='[{"name": "login", "windowMs": 60000, "max": 5, "keyBy": "origin"}]'
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from admission.schemas.rate_limit import KeyStrategy, RateLimitRule


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Production may inject everything via env vars only
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ up front
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _default_rules() -> list[RateLimitRule]:
    return [
        RateLimitRule(name="login", window_ms=60_000, max=5, key_by=KeyStrategy.ORIGIN),
        RateLimitRule(name="session", window_ms=60_000, max=30, key_by=KeyStrategy.PRINCIPAL),
        RateLimitRule(
            name="public", window_ms=60_000, max=60, key_by=KeyStrategy.PRINCIPAL_OR_ORIGIN
        ),
    ]


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    BaseSettings reads its values from the environment; static type checkers
    still treat required fields as constructor arguments, hence the ignore.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level name")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(
        None,
        description="Log file path when output=file (default logs/app.log)",
    )
    max_bytes: int = Field(
        0,
        description="Rotate the log file at this size in bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated log files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required on protected routes",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable request admission control",
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers on responses",
    )
    rate_limit_trust_forwarded_for: bool = Field(
        True,
        description=(
            "Use the first X-Forwarded-For entry as the client origin. Disable "
            "when the API is not behind a proxy that overwrites the header."
        ),
    )
    rate_limit_max_entries_per_key: int = Field(
        100,
        description="Hard cap on timestamps kept per partition",
        ge=1,
    )
    rate_limit_stale_after_seconds: int = Field(
        120,
        description="Inactivity after which a partition is evicted by the sweeper",
        ge=1,
    )
    rate_limit_sweep_interval_seconds: float = Field(
        120.0,
        description="Delay between background sweeps",
        gt=0,
    )
    rate_limit_rules: list[RateLimitRule] = Field(
        default_factory=_default_rules,
        description="Named admission rules referenced by protected routes",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


settings = Settings()
