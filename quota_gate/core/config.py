"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
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

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING") != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


WILDCARD_TIER = "*"

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class IdentityStrategy(str, Enum):
    """How the caller derives the identity a policy counts against."""

    IP = "ip"
    USER_ID = "user_id"
    EMAIL = "email"


class PolicyRule(BaseModel):
    """One row of the policy table.

    ``limit == 0`` means unlimited. ``tier == "*"`` matches any tier that has no
    row of its own for the endpoint class.
    """

    endpoint_class: str = Field(..., min_length=1)
    tier: str = Field(WILDCARD_TIER, min_length=1)
    limit: int = Field(..., ge=0, le=2**32 - 1)
    window_ms: int = Field(..., gt=0)
    identity_strategy: IdentityStrategy = IdentityStrategy.IP
    name: str | None = None

    @field_validator("endpoint_class", "tier")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("identity_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: object) -> object:
        # Accept camelCase spellings such as "userId".
        if isinstance(value, str):
            return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", value.strip()).lower()
        return value

    @property
    def policy_name(self) -> str:
        if self.name:
            return self.name
        if self.tier == WILDCARD_TIER:
            return self.endpoint_class
        return f"{self.endpoint_class}-{self.tier}"


def default_policy_rules() -> list[PolicyRule]:
    """Policy table shipped with the service; override via RATE_LIMIT_POLICIES."""

    return [
        PolicyRule(endpoint_class="auth-login", limit=5, window_ms=15 * MINUTE_MS),
        PolicyRule(endpoint_class="auth-signup", limit=3, window_ms=HOUR_MS),
        PolicyRule(
            endpoint_class="password-reset",
            limit=3,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.EMAIL,
        ),
        PolicyRule(
            endpoint_class="api",
            tier="free",
            limit=100,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="api",
            tier="pro",
            limit=1000,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="api",
            tier="enterprise",
            limit=0,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="analysis",
            tier="free",
            limit=10,
            window_ms=DAY_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="analysis",
            tier="pro",
            limit=100,
            window_ms=DAY_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="ai",
            tier="free",
            limit=50,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="ai",
            tier="pro",
            limit=500,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(
            endpoint_class="ai",
            tier="enterprise",
            limit=2000,
            window_ms=HOUR_MS,
            identity_strategy=IdentityStrategy.USER_ID,
        ),
        PolicyRule(endpoint_class="search", limit=30, window_ms=MINUTE_MS),
    ]


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    """Build log settings from environment."""

    return LogSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    """Build rate limit settings from environment.

    See _build_app_settings() for rationale about the type ignore.
    """

    return RateLimitSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required on admin routes",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field(
        "json",
        description="json for machine-readable logs, plain for local development",
    )
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file at this size (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Rate limiting and quota enforcement configuration."""

    enabled: bool = Field(
        True,
        description="Enforce rate limits on routes that declare an endpoint class",
    )
    storage: Literal["redis", "memory"] = Field(
        "redis",
        description="Preferred counter store; redis falls back to memory per call",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL for the shared counter store",
    )
    redis_timeout_ms: int = Field(
        50,
        description="Socket and connect timeout for Redis calls",
        ge=1,
    )
    key_prefix: str = Field("quota:", description="Prefix for counter keys")
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers in responses",
    )
    policies: list[PolicyRule] = Field(
        default_factory=default_policy_rules,
        description="Policy table (JSON list of rules)",
    )
    required_endpoint_classes: list[str] = Field(
        default_factory=lambda: ["api"],
        description="Endpoint classes routes depend on; startup fails if unmapped",
    )
    penalty_base_delay_ms: int = Field(1000, ge=0)
    penalty_max_delay_ms: int = Field(30_000, ge=0)
    penalty_cap_exponent: int = Field(6, ge=0, le=30)
    penalty_idle_reset_ms: int = Field(4 * 15 * MINUTE_MS, gt=0)
    journal_capacity: int = Field(1000, ge=1)
    sweep_interval_ms: int | None = Field(
        None,
        description="In-process sweep interval; defaults to half the smallest window",
        gt=0,
    )
    lock_shards: int = Field(64, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if required settings are missing.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
