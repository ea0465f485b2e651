from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_bool(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return value


class Settings(BaseModel):
    """Runtime settings for the authentication gateway."""

    # Bot mitigation
    recaptcha_enabled: bool = env_field(False, "RECAPTCHA_ENABLED")
    recaptcha_site_key: str = env_field("", "RECAPTCHA_SITE_KEY")
    recaptcha_secret_key: str = env_field("", "RECAPTCHA_SECRET_KEY")
    recaptcha_score_threshold: float = env_field(
        0.5,
        "RECAPTCHA_SCORE_THRESHOLD",
        description="Minimum score (0 = bot, 1 = human) accepted by verification",
    )
    recaptcha_verify_url: str = env_field(RECAPTCHA_VERIFY_URL, "RECAPTCHA_VERIFY_URL")
    recaptcha_timeout_seconds: float = env_field(5.0, "RECAPTCHA_TIMEOUT_SECONDS")

    # Password policy
    password_min_length: int = env_field(13, "PASSWORD_MIN_LENGTH")
    password_max_age_days: int = env_field(
        184, "PASSWORD_MAX_AGE_DAYS", description="Roughly six months"
    )

    # Lockout policy
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # Password reset
    password_reset_base_url: str = env_field(
        "http://localhost:3000", "PASSWORD_RESET_LINK_BASE_URL"
    )
    password_reset_token_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TOKEN_TTL_MINUTES")
    password_reset_min_response_ms: int = env_field(
        400,
        "PASSWORD_RESET_MIN_RESPONSE_MS",
        description="Reset requests are padded to this duration whether or not the account exists",
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USERNAME")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit TLS otherwise"
    )
    email_from_address: str = env_field("no-reply@example.com", "PASSWORD_RESET_EMAIL_FROM")
    email_from_name: str = env_field("Forum CMS", "EMAIL_FROM_NAME")

    # Sessions
    session_secret: str | None = env_field(None, "SESSION_SECRET")
    session_max_age_seconds: int = env_field(60 * 60 * 24, "SESSION_MAX_AGE")

    # Storage
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")

    # Audit
    audit_hash_key: str | None = env_field(None, "AUDIT_HASH_KEY")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

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
        "recaptcha_enabled", "smtp_use_tls", "use_memory_store", "test_mode", mode="before"
    )
    @classmethod
    def _coerce_bool(cls, value: Any) -> Any:
        return _parse_bool(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("recaptcha_score_threshold")
    @classmethod
    def _validate_threshold(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("RECAPTCHA_SCORE_THRESHOLD must be between 0 and 1")
        return value

    @field_validator(
        "password_min_length",
        "password_max_age_days",
        "lockout_max_attempts",
        "lockout_duration_minutes",
        "password_reset_token_ttl_minutes",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator("password_reset_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/") or "http://localhost:3000"

    @model_validator(mode="after")
    def _ensure_session_secret(self) -> "Settings":
        if self.session_secret:
            if len(self.session_secret) < 32:
                raise ValueError("SESSION_SECRET must be at least 32 characters")
            return self
        # Sessions signed with a generated key do not survive a restart.
        logger.warning(
            "session_secret_generated",
            message="SESSION_SECRET not set; generated an ephemeral signing key",
        )
        self.session_secret = secrets.token_urlsafe(64)
        return self

    @property
    def effective_audit_key(self) -> str:
        return self.audit_hash_key or self.session_secret or ""


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
