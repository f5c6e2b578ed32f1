from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from trustcore.logging import get_logger

logger = get_logger(__name__)


class EmailTransport(str, Enum):
    """Outbound email delivery mechanisms."""

    SMTP = "smtp"
    RESEND = "resend"
    LOG = "log"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str, label: str) -> str:
    """Return a generated secret stored under SHARED_FS_ROOT, creating it once."""
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/trustcore"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            f"{label}_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error(f"{label}_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error(f"{label}_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {label}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication and session-trust service."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/trustcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: log-only email, no Redis requirement.",
    )
    app_name: str = env_field("TrustCore", "APP_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Sealed session
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_cookie_name: str = env_field("trustcore_session", "SESSION_COOKIE_NAME")
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    enable_csrf: bool = env_field(True, "ENABLE_CSRF")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    # Credential & lockout
    require_email_verification: bool = env_field(True, "REQUIRE_EMAIL_VERIFICATION")
    max_failed_login_attempts: int = env_field(
        5, "MAX_FAILED_LOGIN_ATTEMPTS", ge=1, description="Failures before lockout"
    )
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", ge=1)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_history_size: int = env_field(3, "PASSWORD_HISTORY_SIZE", ge=1)
    unlock_token_ttl_minutes: int = env_field(60, "UNLOCK_TOKEN_TTL_MINUTES", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)

    # Two-factor
    two_factor_issuer: str = env_field("TrustCore", "TWO_FACTOR_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1, le=20)
    backup_code_warning_threshold: int = env_field(3, "BACKUP_CODE_WARNING_THRESHOLD", ge=0)
    pending_two_factor_ttl_minutes: int = env_field(5, "PENDING_2FA_TTL_MINUTES", ge=1)

    # Remember-me & impersonation
    remember_me_cookie_name: str = env_field("remember_me", "REMEMBER_ME_COOKIE_NAME")
    remember_me_lifetime_days: int = env_field(30, "REMEMBER_ME_LIFETIME_DAYS", ge=1)
    impersonation_timeout_minutes: int = env_field(60, "IMPERSONATION_TIMEOUT_MINUTES", ge=1)

    # Rate limits: (requests, window seconds)
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT", ge=1)
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS", ge=1)
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT", ge=1)
    register_rate_window_seconds: int = env_field(3600, "REGISTER_RATE_WINDOW_SECONDS", ge=1)
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT", ge=1)
    forgot_password_rate_window_seconds: int = env_field(
        3600, "FORGOT_PASSWORD_RATE_WINDOW_SECONDS", ge=1
    )
    unlock_request_rate_limit: int = env_field(3, "UNLOCK_REQUEST_RATE_LIMIT", ge=1)
    unlock_request_rate_window_seconds: int = env_field(
        3600, "UNLOCK_REQUEST_RATE_WINDOW_SECONDS", ge=1
    )
    two_factor_rate_limit: int = env_field(5, "TWO_FACTOR_RATE_LIMIT", ge=1)
    two_factor_rate_window_seconds: int = env_field(
        900, "TWO_FACTOR_RATE_WINDOW_SECONDS", ge=1
    )

    # Email delivery
    email_transport: EmailTransport = env_field(EmailTransport.LOG, "EMAIL_TRANSPORT")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    resend_api_key: str | None = env_field(None, "RESEND_API_KEY")
    resend_api_url: str = env_field("https://api.resend.com/emails", "RESEND_API_URL")
    email_from_address: str = env_field("noreply@localhost", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TrustCore", "EMAIL_FROM_NAME")
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS", gt=0)

    # Email circuit breaker
    breaker_failure_threshold: int = env_field(5, "EMAIL_BREAKER_FAILURE_THRESHOLD", ge=1)
    breaker_reset_timeout_ms: int = env_field(60_000, "EMAIL_BREAKER_RESET_TIMEOUT_MS", ge=0)
    breaker_success_threshold: int = env_field(2, "EMAIL_BREAKER_SUCCESS_THRESHOLD", ge=1)
    breaker_half_open_max_requests: int = env_field(
        1, "EMAIL_BREAKER_HALF_OPEN_MAX_REQUESTS", ge=1
    )

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("email_transport")
    @classmethod
    def _validate_transport(cls, value: EmailTransport) -> EmailTransport:
        return EmailTransport(value)

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("SESSION_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so sealed sessions survive restarts
        return _persisted_secret(".session_secret", "session_secret")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
