from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from campusauth.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_JWT_ALGORITHMS = ("HS256", "HS384", "HS512")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and passed explicitly."""

    database_url: str = env_field(
        "postgresql://localhost:5432/campusauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Timeouts bounding every cache and store round-trip
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS", gt=0)
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    store_pool_min_size: int = env_field(1, "STORE_POOL_MIN_SIZE", ge=1)
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE", ge=1)

    # Signing material, static for the process lifetime
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_issuer: str = env_field("campusauth", "JWT_ISSUER")
    jwt_audience: str = env_field("campusauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )

    session_ttl_seconds: int = env_field(7 * 24 * 3600, "SESSION_TTL_SECONDS", ge=60)

    # One-time codes
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS", ge=30)
    mfa_ttl_seconds: int = env_field(300, "MFA_TTL_SECONDS", ge=30)
    reset_ttl_seconds: int = env_field(3600, "RESET_TTL_SECONDS", ge=60)
    code_max_attempts: int = env_field(3, "CODE_MAX_ATTEMPTS", ge=1)
    code_issue_limit: int = env_field(3, "CODE_ISSUE_LIMIT", ge=1)
    code_issue_window_seconds: int = env_field(3600, "CODE_ISSUE_WINDOW_SECONDS", ge=60)
    otc_rate_limit_counts_failed_issuance: bool = env_field(
        False, "OTC_RATE_LIMIT_COUNTS_FAILED_ISSUANCE"
    )

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", ge=1)
    failed_attempt_marker_seconds: int = env_field(
        600, "FAILED_ATTEMPT_MARKER_SECONDS", ge=1
    )

    # Field-level encryption; falls back to the JWT secret when unset
    field_encryption_key: str | None = env_field(None, "FIELD_ENCRYPTION_KEY")

    phone_pattern: str = env_field(r"^\+91[0-9]{10}$", "PHONE_PATTERN")
    default_campus_id: str | None = env_field(None, "DEFAULT_CAMPUS_ID")

    # Notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Campus Portal", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("CAMPUS", "SMS_SENDER_ID")
    notification_max_attempts: int = env_field(3, "NOTIFICATION_MAX_ATTEMPTS", ge=1)
    notification_backoff_seconds: float = env_field(
        1.0, "NOTIFICATION_BACKOFF_SECONDS", ge=0
    )
    notification_backoff_cap_seconds: float = env_field(
        5.0, "NOTIFICATION_BACKOFF_CAP_SECONDS", ge=0
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(f"unsupported JWT algorithm {value}")
        return normalized

    @field_validator("store_pool_max_size")
    @classmethod
    def _validate_pool(cls, value: int, info) -> int:
        min_size = info.data.get("store_pool_min_size", 1)
        if value < min_size:
            logger.warning("store_pool_max_below_min", max_size=value, min_size=min_size)
            return min_size
        return value

    @property
    def encryption_key_material(self) -> str:
        return self.field_encryption_key or self.jwt_secret


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
