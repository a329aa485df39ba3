from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication kernel."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory where the memory store snapshots its state; unset keeps it in-process only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Echo issued one-time codes back to the caller for local testing",
    )
    # Tokens
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and invalidate the old one",
    )
    # Password hashing (argon2id)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost_kib: int = env_field(64 * 1024, "PASSWORD_MEMORY_COST_KIB")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")
    # One-time codes
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_max_requests_per_window: int = env_field(3, "OTP_MAX_REQUESTS_PER_WINDOW")
    otp_request_window_minutes: int = env_field(5, "OTP_REQUEST_WINDOW_MINUTES")
    password_reset_email_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_EMAIL_TTL_MINUTES"
    )
    password_reset_phone_ttl_minutes: int = env_field(
        5, "PASSWORD_RESET_PHONE_TTL_MINUTES"
    )
    # Login lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")
    # Notification delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Marketplace", "EMAIL_FROM_NAME")

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

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                raise ValueError(f"{info.field_name} must be at least 32 characters")
            return value
        logger.warning(
            "jwt_secret_generated",
            field=info.field_name,
            message="Tokens will not survive a restart; set the secret explicitly",
        )
        return secrets.token_urlsafe(64)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "password_time_cost",
        "password_parallelism",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "otp_max_requests_per_window",
        "otp_request_window_minutes",
        "password_reset_email_ttl_minutes",
        "password_reset_phone_ttl_minutes",
        "max_login_attempts",
        "lockout_minutes",
    )
    @classmethod
    def _positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("password_memory_cost_kib")
    @classmethod
    def _memory_cost_floor(cls, value: int) -> int:
        if value < 8 * 1024:
            raise ValueError("password_memory_cost_kib must be at least 8192")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh token secrets must differ")
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
