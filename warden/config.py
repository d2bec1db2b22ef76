from __future__ import annotations

import os
import re
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)

# Minimum length for the HMAC signing secret
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def jwt_secret_is_strong(secret: str | None) -> bool:
    """Check length and character-class mix of the signing secret.

    At least three of upper case, lower case, digits and other characters
    must be present.
    """
    if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
        return False
    classes = [
        re.search(r"[A-Z]", secret),
        re.search(r"[a-z]", secret),
        re.search(r"[0-9]", secret),
        re.search(r"[^A-Za-z0-9]", secret),
    ]
    return sum(1 for c in classes if c) >= 3


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets for tests.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("user-management-dashboard", "JWT_ISSUER")
    jwt_audience: str = env_field("user-management-api", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Tolerated clock skew when checking exp",
    )

    # Session and throttling policy
    max_sessions_per_user: int = env_field(5, "MAX_REFRESH_TOKENS_PER_USER")
    login_rate_limit_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    login_ip_rate_limit_attempts: int = env_field(100, "LOGIN_IP_RATE_LIMIT_ATTEMPTS")
    failed_login_alert_threshold: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_metrics_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "LOGIN_METRICS_TTL_SECONDS"
    )
    authz_cache_ttl_seconds: int = env_field(15 * 60, "AUTHZ_CACHE_TTL_SECONDS")

    # Store connectivity
    store_retry_attempts: int = env_field(3, "STORE_RETRY_ATTEMPTS")
    store_retry_backoff_ms: int = env_field(50, "STORE_RETRY_BACKOFF_MS")
    store_socket_timeout: float = env_field(5.0, "STORE_SOCKET_TIMEOUT")

    # Refresh cookie
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth", "REFRESH_COOKIE_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")

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

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: str | None) -> str:
        if not jwt_secret_is_strong(value):
            raise ValueError(
                "JWT_SECRET must be at least 32 characters and mix at least "
                "three character classes"
            )
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "max_sessions_per_user",
        "login_rate_limit_attempts",
        "login_rate_limit_window_seconds",
        "login_ip_rate_limit_attempts",
        "authz_cache_ttl_seconds",
        "store_retry_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator("token_leeway_seconds", "store_retry_backoff_ms")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @model_validator(mode="after")
    def _warn_insecure_cookie(self) -> "Settings":
        if not self.cookie_secure and not self.test_mode:
            logger.warning(
                "refresh_cookie_insecure",
                message="COOKIE_SECURE is disabled; refresh cookies will be sent over plain HTTP",
            )
        return self


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
