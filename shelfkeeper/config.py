from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shelfkeeper.logging import get_logger

logger = get_logger(__name__)


class TokenDelivery(str, Enum):
    """Where OAuth callback tokens are placed on the front-end redirect URL."""

    FRAGMENT = "fragment"
    QUERY = "query"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, loaded once from the environment and ``.env``."""

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/shelfkeeper", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for the in-memory store's JSON snapshot; unset keeps it purely in memory",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    development_mode: bool = env_field(
        False,
        "DEVELOPMENT_MODE",
        description="Expose diagnostic references on internal errors",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("shelfkeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("shelfkeeper-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Allowed clock skew when checking expiry"
    )
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES"
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_token_delivery: TokenDelivery = env_field(
        TokenDelivery.FRAGMENT,
        "OAUTH_TOKEN_DELIVERY",
        description="fragment keeps tokens out of server logs and Referer headers",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Shelfkeeper Library", "EMAIL_FROM_NAME")

    # Web
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    reveal_unknown_reset_email: bool = env_field(
        True,
        "REVEAL_UNKNOWN_RESET_EMAIL",
        description="Return 404 from forgot-password for unknown addresses",
    )

    # Rate limits (requests per window)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    signup_rate_limit: int = env_field(3, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(60 * 60, "SIGNUP_RATE_WINDOW_SECONDS")
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT")
    forgot_password_rate_window_seconds: int = env_field(
        60 * 60, "FORGOT_PASSWORD_RATE_WINDOW_SECONDS"
    )
    refresh_rate_limit: int = env_field(10, "REFRESH_RATE_LIMIT")
    refresh_rate_window_seconds: int = env_field(15 * 60, "REFRESH_RATE_WINDOW_SECONDS")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: Any) -> Any:
        if not isinstance(value, str) or not value.strip():
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be set; refusing to start without a signing key")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "email_verification_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value


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
