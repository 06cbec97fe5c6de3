from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tollgate.logging import get_logger

logger = get_logger(__name__)

# Origins every deployment accepts in addition to the configured app URL.
DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


class IdentityBackend(str, Enum):
    """Where password checks and session tokens come from."""

    MEMORY = "memory"
    IDENTITY_TOOLKIT = "identity_toolkit"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session service."""

    environment: str = env_field("development", "ENVIRONMENT")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    allowed_origins: str = env_field(
        "", "ALLOWED_ORIGINS", description="Comma separated extra origins"
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Identity provider
    identity_backend: IdentityBackend = env_field(
        IdentityBackend.MEMORY, "IDENTITY_BACKEND"
    )
    identity_api_key: str | None = env_field(None, "IDENTITY_API_KEY")
    identity_project_id: str | None = env_field(None, "IDENTITY_PROJECT_ID")
    service_account_email: str | None = env_field(None, "SERVICE_ACCOUNT_EMAIL")
    service_account_private_key: str | None = env_field(
        None, "SERVICE_ACCOUNT_PRIVATE_KEY"
    )
    identity_timeout_seconds: float = env_field(
        8.0,
        "IDENTITY_TIMEOUT_SECONDS",
        description="Upper bound for every identity provider call",
    )
    token_secret: str | None = env_field(None, "TOKEN_SECRET")
    id_token_ttl_minutes: int = env_field(60, "ID_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")

    # Storage
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/tollgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(True, "ALLOW_REDIS_FALLBACK_DEV")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tollgate", "EMAIL_FROM_NAME")

    # Cookies and CSRF
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    csrf_cookie_name: str = env_field("_csrf", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_body_field: str = env_field("_csrf", "CSRF_BODY_FIELD")

    # Email change workflow
    email_change_code_length: int = env_field(6, "EMAIL_CHANGE_CODE_LENGTH")
    email_change_ttl_hours: int = env_field(24, "EMAIL_CHANGE_TTL_HOURS")

    # Rate limits: attempts per window (seconds)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window: int = env_field(900, "LOGIN_RATE_WINDOW")
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_window: int = env_field(3600, "REGISTER_RATE_WINDOW")
    refresh_rate_limit: int = env_field(10, "REFRESH_RATE_LIMIT")
    refresh_rate_window: int = env_field(900, "REFRESH_RATE_WINDOW")
    reset_password_rate_limit: int = env_field(3, "RESET_PASSWORD_RATE_LIMIT")
    reset_password_rate_window: int = env_field(900, "RESET_PASSWORD_RATE_WINDOW")
    change_email_rate_limit: int = env_field(3, "CHANGE_EMAIL_RATE_LIMIT")
    change_email_rate_window: int = env_field(900, "CHANGE_EMAIL_RATE_WINDOW")
    verify_email_change_rate_limit: int = env_field(
        5, "VERIFY_EMAIL_CHANGE_RATE_LIMIT"
    )
    verify_email_change_rate_window: int = env_field(
        3600, "VERIFY_EMAIL_CHANGE_RATE_WINDOW"
    )

    # Error tracking
    sentry_dsn: str | None = env_field(None, "SENTRY_DSN")
    sentry_traces_sample_rate: float = env_field(0.1, "SENTRY_TRACES_SAMPLE_RATE")

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

    @field_validator("identity_backend")
    @classmethod
    def _validate_backend(cls, value: IdentityBackend) -> IdentityBackend:
        return IdentityBackend(value)

    @field_validator("email_change_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if value < 6:
            raise ValueError("email change codes must be at least 6 digits")
        return value

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart.
        logger.warning("token_secret_generated")
        return secrets.token_urlsafe(64)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"prod", "production"}

    @property
    def origin_allow_list(self) -> set[str]:
        origins = set(DEFAULT_ALLOWED_ORIGINS)
        origins.add(self.app_base_url.rstrip("/"))
        for item in self.allowed_origins.split(","):
            if item.strip():
                origins.add(item.strip().rstrip("/"))
        return origins


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
