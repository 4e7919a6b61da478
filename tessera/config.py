from __future__ import annotations

import hashlib
import hmac
import os
import secrets
import tempfile
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tessera.durations import parse_duration
from tessera.logging import get_logger

logger = get_logger(__name__)


class SameSite(str, Enum):
    """Cookie SameSite policies accepted by the cookie helpers."""

    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_DURATION_FIELDS = (
    "access_token_ttl",
    "refresh_token_ttl",
    "reset_otp_ttl",
    "reset_session_ttl",
    "reset_rate_limit_window",
    "session_absolute_ttl",
    "session_inactivity_timeout",
    "login_lock_duration",
    "auth_rate_limit_window",
    "clock_skew_leeway",
)


class Settings(BaseModel):
    """Runtime settings for the credential and session services."""

    environment: str = env_field("development", "ENVIRONMENT")
    database_url: str = env_field("postgresql://localhost:5432/tessera", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field(None, "STATE_DIR", validate_default=True)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI; also selects the synchronous Redis client.",
    )

    # Signing material
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Refresh signing key; derived from JWT_SECRET when unset",
    )
    reset_session_secret: str | None = env_field(
        None,
        "RESET_SESSION_SECRET",
        description="Reset-session signing key; derived from JWT_SECRET when unset",
    )
    csrf_secret: str | None = env_field(
        None, "CSRF_SECRET", description="CSRF MAC key; derived from JWT_SECRET when unset"
    )
    jwt_issuer: str = env_field("tessera", "JWT_ISSUER")
    jwt_audience: str = env_field("tessera-clients", "JWT_AUDIENCE")

    # Credential and session lifetimes
    access_token_ttl: timedelta = env_field(timedelta(minutes=15), "ACCESS_TOKEN_TTL")
    refresh_token_ttl: timedelta = env_field(timedelta(days=7), "REFRESH_TOKEN_TTL")
    session_absolute_ttl: timedelta = env_field(timedelta(days=30), "SESSION_ABSOLUTE_TTL")
    session_inactivity_timeout: timedelta = env_field(
        timedelta(hours=24), "SESSION_INACTIVITY_TIMEOUT"
    )
    clock_skew_leeway: timedelta = env_field(timedelta(0), "CLOCK_SKEW_LEEWAY")

    # Password reset
    reset_otp_ttl: timedelta = env_field(timedelta(minutes=15), "RESET_OTP_TTL")
    reset_session_ttl: timedelta = env_field(timedelta(minutes=10), "RESET_SESSION_TTL")
    reset_max_attempts: int = env_field(3, "RESET_MAX_ATTEMPTS")
    reset_rate_limit_window: timedelta = env_field(
        timedelta(minutes=60), "RESET_RATE_LIMIT_WINDOW"
    )
    reset_rate_limit_max: int = env_field(3, "RESET_RATE_LIMIT_MAX")
    reset_otp_length: int = env_field(6, "RESET_OTP_LENGTH")
    reset_token_bytes: int = env_field(32, "RESET_TOKEN_BYTES")

    # Login lockout
    login_failure_limit: int = env_field(5, "LOGIN_FAILURE_LIMIT")
    login_lock_duration: timedelta = env_field(timedelta(minutes=30), "LOGIN_LOCK_DURATION")

    # Per-IP throttle shared by the unauthenticated auth routes; 0 disables it
    auth_rate_limit_max: int = env_field(20, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window: timedelta = env_field(
        timedelta(minutes=15), "AUTH_RATE_LIMIT_WINDOW"
    )

    # Cookies and CSRF
    access_cookie_name: str = env_field("tessera_access", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("tessera_refresh", "REFRESH_COOKIE_NAME")
    csrf_cookie_name: str = env_field("tessera_csrf", "CSRF_COOKIE_NAME")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_path: str = env_field("/", "COOKIE_PATH")
    cookie_samesite: SameSite = env_field(SameSite.LAX, "COOKIE_SAMESITE")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure flag; defaults to on only in production",
    )
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_cookie_max_age: timedelta = env_field(timedelta(days=1), "CSRF_COOKIE_MAX_AGE")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tessera", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Observability
    metrics_enabled: bool = env_field(True, "METRICS_ENABLED")
    metrics_namespace: str = env_field("tessera", "METRICS_NAMESPACE")

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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

    @property
    def secure_cookies(self) -> bool:
        """Whether auth cookies carry the Secure flag.

        SameSite=None is rejected by browsers without Secure, so it always
        forces the flag on.
        """
        if self.cookie_samesite == SameSite.NONE:
            return True
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    def signing_key(self, purpose: str) -> bytes:
        """Return the key for one signing context.

        Explicit per-purpose secrets win; otherwise a key is derived from
        ``jwt_secret`` so no two contexts ever share key material.
        """
        explicit = {
            "refresh": self.jwt_refresh_secret,
            "reset_session": self.reset_session_secret,
            "csrf": self.csrf_secret,
        }.get(purpose)
        if explicit:
            return explicit.encode()
        return hmac.new(
            self.jwt_secret.encode(), f"tessera:{purpose}".encode(), hashlib.sha256
        ).digest()

    @field_validator(*_DURATION_FIELDS, "csrf_cookie_max_age", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("cookie_samesite", mode="before")
    @classmethod
    def _normalize_samesite(cls, value: Any) -> SameSite:
        if isinstance(value, SameSite):
            return value
        return SameSite(str(value).strip().lower())

    @field_validator("cookie_secure", "cookie_domain", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "reset_max_attempts",
        "reset_rate_limit_max",
        "reset_otp_length",
        "reset_token_bytes",
        "login_failure_limit",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("state_dir", mode="before")
    @classmethod
    def _default_state_dir(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return os.getenv("STATE_DIR") or "/srv/tessera"

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so credentials survive restarts
        state_dir = Path(info.data.get("state_dir") or "/srv/tessera")
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated


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
