from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from staffauth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/staffauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes startup requirements (generated JWT secret) for tests.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("staffauth", "JWT_ISSUER")
    jwt_audience: str = env_field("staffauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    session_ttl_hours: int = env_field(8, "SESSION_TTL_HOURS", gt=0)
    max_concurrent_sessions: int = env_field(
        5,
        "MAX_CONCURRENT_SESSIONS",
        gt=0,
        description="Oldest active session is terminated once this many are open.",
    )
    max_failed_login_attempts: int = env_field(
        5, "MAX_FAILED_LOGIN_ATTEMPTS", gt=0
    )
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)
    password_reset_ttl_hours: int = env_field(24, "PASSWORD_RESET_TTL_HOURS", gt=0)
    default_role_name: str = env_field(
        "Employee",
        "DEFAULT_ROLE_NAME",
        description="Role assigned to self-registered accounts.",
    )

    cleanup_enabled: bool = env_field(True, "CLEANUP_ENABLED")
    token_cleanup_interval_hours: float = env_field(
        24, "TOKEN_CLEANUP_INTERVAL_HOURS", gt=0
    )
    token_retention_days: int = env_field(30, "TOKEN_RETENTION_DAYS", ge=0)
    session_cleanup_interval_hours: float = env_field(
        6, "SESSION_CLEANUP_INTERVAL_HOURS", gt=0
    )
    session_retention_days: int = env_field(7, "SESSION_RETENTION_DAYS", ge=0)
    auth_log_cleanup_interval_hours: float = env_field(
        24, "AUTH_LOG_CLEANUP_INTERVAL_HOURS", gt=0
    )
    auth_log_retention_days: int = env_field(90, "AUTH_LOG_RETENTION_DAYS", ge=0)
    cleanup_retry_minutes: float = env_field(5, "CLEANUP_RETRY_MINUTES", gt=0)

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
    def _check_jwt_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside of TEST_MODE")
        # Tokens signed with this secret do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="test_mode")
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
