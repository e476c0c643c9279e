"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


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


def _split_csv(value: object) -> object:
    """Accept comma-separated strings for list fields coming from env vars."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    name: str = Field(
        "SoulHeads API",
        description="Service name reported in docs and logs",
    )
    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field(
        "json",
        description="Log format: 'json' for structured output, 'plain' for humans",
    )
    output: str = Field("stdout", description="Log destination: 'stdout' or 'file'")
    file_path: str | None = Field(
        None,
        description="Log file path when output is 'file' (default logs/app.log)",
    )
    max_bytes: int = Field(
        5 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Request rate limiting configuration.

    Windows are expressed in milliseconds to match the values operators
    already use for the Node deployment (``windowMs``).
    """

    enabled: bool = Field(True, description="Enable the request rate limiter")
    backend: str = Field(
        "memory",
        description="Counter store: 'memory' (single instance) or 'redis' (shared)",
    )
    redis_url: str | None = Field(
        None,
        description="Redis connection URL, required when backend is 'redis'",
    )
    store_timeout_seconds: float = Field(
        0.5,
        description="Upper bound for a single accounting call before failing open",
        gt=0,
    )

    max_requests: int = Field(60, description="Default requests per window", ge=1)
    window_ms: int = Field(60_000, description="Default window size in ms", ge=1)
    skip_methods: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["OPTIONS"],
        description="HTTP methods that bypass rate limiting",
    )

    auth_max_requests: int = Field(20, description="Requests per window for auth routes", ge=1)
    auth_window_ms: int = Field(60_000, description="Window for auth routes in ms", ge=1)
    auth_path_prefixes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["/api/auth"],
        description="Route prefixes governed by the auth policy",
    )

    search_max_requests: int = Field(
        120, description="Requests per window for search routes", ge=1
    )
    search_window_ms: int = Field(60_000, description="Window for search routes in ms", ge=1)
    search_path_prefixes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["/api/search", "/api/sneakers/search"],
        description="Route prefixes governed by the search policy",
    )

    exempt_paths: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["/health"],
        description="Exact paths that are never rate limited",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the first X-Forwarded-For hop as client address (behind a proxy)",
    )

    cleanup_interval_seconds: float = Field(
        300.0,
        description="Interval between sweeps of stale in-memory buckets",
        gt=0,
    )
    stale_after_seconds: float = Field(
        3600.0,
        description="Age after which an idle in-memory bucket is dropped",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @field_validator(
        "skip_methods",
        "auth_path_prefixes",
        "search_path_prefixes",
        "exempt_paths",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: object) -> object:
        return _split_csv(value)

    @field_validator("skip_methods")
    @classmethod
    def _upper_methods(cls, value: list[str]) -> list[str]:
        return [method.upper() for method in value]

    @field_validator("backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return value.strip().lower()


def _build_app_settings() -> AppSettings:
    """Build app settings from environment.

    Pydantic Settings (v2) populates values from environment variables.
    Static type checkers treat required fields as constructor arguments,
    which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> LogSettings:
    return LogSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings()  # type: ignore[call-arg]


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.

    Environments:
    - development: Local development (relaxed security headers)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (strict security headers)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
