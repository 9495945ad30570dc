from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cobaltauth.logging import get_logger

logger = get_logger(__name__)

# Used only when JWT_SECRET is unset; tokens signed with it are forgeable.
DEV_JWT_SECRET = "cobaltauth-development-secret-change-me-before-deploying"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings read from the environment and an optional ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/cobaltauth", "DATABASE_URL"
    )
    database_statement_timeout_ms: int = env_field(
        10_000,
        "DATABASE_STATEMENT_TIMEOUT_MS",
        description="Server-side cap on any single query; a hung query fails as a database error",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Per-command Redis timeout in seconds; timeouts fail closed",
    )
    shared_fs_root: str = env_field("/srv/cobaltauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables the in-memory cache fallback.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("cobaltauth", "JWT_ISSUER")
    jwt_audience: str = env_field("cobaltauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        30,
        "JWT_ACCESS_EXPIRY_MINUTES",
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "JWT_REFRESH_EXPIRY_DAYS",
        description="Refresh token lifetime in days",
    )
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )
    refresh_token_retention_days: int = env_field(
        30,
        "REFRESH_TOKEN_RETENTION_DAYS",
        description="How long expired refresh token rows are kept before cleanup",
    )
    blacklist_access_on_refresh: bool = env_field(
        False,
        "BLACKLIST_ACCESS_ON_REFRESH",
        description="Blacklist the presented access token when its refresh token rotates",
    )

    login_rate_limit_max_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(
        900, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    chat_rate_limit_per_minute: int = env_field(20, "CHAT_RATE_LIMIT_PER_MINUTE")
    chat_daily_message_quota: int = env_field(100, "CHAT_DAILY_MESSAGE_QUOTA")

    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    app_base_url: str = env_field("http://localhost:2727", "APP_BASE_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Cobalt", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "database_statement_timeout_ms",
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "refresh_token_retention_days",
        "login_rate_limit_max_attempts",
        "login_rate_limit_window_seconds",
        "chat_rate_limit_per_minute",
        "chat_daily_message_quota",
        "email_verification_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("leeway cannot be negative")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            logger.warning(
                "jwt_secret_missing_using_dev_default",
                message="JWT_SECRET is not set; falling back to the development secret",
            )
            return DEV_JWT_SECRET
        if len(value) < 32:
            logger.warning("jwt_secret_short", length=len(value), recommended=32)
        return value


@dataclass(frozen=True)
class TokenConfig:
    """Signing parameters handed explicitly to every token codec call."""

    secret: str
    issuer: str = "cobaltauth"
    audience: str = "cobaltauth-clients"
    access_ttl_minutes: int = 30
    refresh_ttl_days: int = 7
    leeway_seconds: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_days=settings.refresh_token_ttl_days,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self.access_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.refresh_ttl_days * 24 * 60 * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
