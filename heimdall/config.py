from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from heimdall.logging import get_logger

logger = get_logger(__name__)

# Placeholder shipped in sample configs; never acceptable as a signing key.
_PLACEHOLDER_SECRET = "your-secret-key"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration for the admin API and its auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/heimdall", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets for the test suite.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # auth.* / jwt.*
    access_secret: str = env_field(None, "AUTH_ACCESS_SECRET", validate_default=True)
    access_expire_seconds: int = env_field(
        2 * 60 * 60, "AUTH_ACCESS_EXPIRE", gt=0, description="Access token lifetime"
    )
    refresh_expire_seconds: int = env_field(
        7 * 24 * 60 * 60, "JWT_REFRESH_EXPIRE", gt=0, description="Refresh token lifetime"
    )
    jwt_issuer: str = env_field("heimdall-admin", "JWT_ISSUER")
    jwt_audience: str | None = env_field(None, "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(0, "JWT_CLOCK_SKEW_SECONDS", ge=0)
    refresh_rotation: bool = env_field(
        False,
        "JWT_REFRESH_ROTATION",
        description="Revoke the presented refresh token when a new pair is issued",
    )

    # security.*
    bcrypt_cost: int = env_field(12, "SECURITY_BCRYPT_COST", ge=10, le=15)
    max_login_attempts: int = env_field(5, "SECURITY_MAX_LOGIN_ATTEMPTS", ge=1)
    login_lockout_duration_seconds: int = env_field(
        30 * 60, "SECURITY_LOGIN_LOCKOUT_DURATION", gt=0
    )
    login_rate_limit_per_minute: int = env_field(
        60,
        "LOGIN_RATE_LIMIT_PER_MINUTE",
        ge=0,
        description="Per client IP request budget for POST /admin/login; 0 disables",
    )
    trust_forwarded_headers: bool = env_field(True, "TRUST_FORWARDED_HEADERS")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=1)
    password_require_upper: bool = env_field(False, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(False, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(False, "PASSWORD_REQUIRE_DIGIT")
    password_require_symbol: bool = env_field(False, "PASSWORD_REQUIRE_SYMBOL")
    password_min_classes: int = env_field(3, "PASSWORD_MIN_CLASSES", ge=0, le=4)

    # cache.login-attempts.*
    login_attempts_prefix: str = env_field("login_attempts:", "CACHE_LOGIN_ATTEMPTS_PREFIX")
    login_attempts_ttl_seconds: int = env_field(
        30 * 60, "CACHE_LOGIN_ATTEMPTS_TTL", gt=0
    )

    # I/O deadlines
    kv_timeout_seconds: float = env_field(2.0, "KV_TIMEOUT_SECONDS", gt=0, le=2.0)
    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS", gt=0, le=10.0)

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

    @field_validator("access_secret")
    @classmethod
    def _validate_access_secret(cls, value: str | None) -> str:
        if not value or not value.strip():
            raise ValueError("AUTH_ACCESS_SECRET is required")
        if value == _PLACEHOLDER_SECRET:
            raise ValueError("AUTH_ACCESS_SECRET must not be the sample placeholder")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _check_lifetimes(self) -> "Settings":
        if self.refresh_expire_seconds < self.access_expire_seconds:
            raise ValueError("JWT_REFRESH_EXPIRE must be >= AUTH_ACCESS_EXPIRE")
        if self.password_max_length < self.password_min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must be >= PASSWORD_MIN_LENGTH")
        if self.login_attempts_ttl_seconds != self.login_lockout_duration_seconds:
            logger.warning(
                "lockout_window_mismatch",
                attempts_ttl=self.login_attempts_ttl_seconds,
                lockout_duration=self.login_lockout_duration_seconds,
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
