from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from learnquest.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than 256 bits are rejected
MIN_JWT_SECRET_LENGTH = 32
MIN_HASH_ITERATIONS = 10_000


class SmtpSecurity(str, Enum):
    """How the SMTP connection is secured."""

    STARTTLS = "starttls"
    SSL = "ssl"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/learnquest", "DATABASE_URL"
    )
    state_dir: str = env_field("/srv/learnquest", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("learnquest", "JWT_ISSUER")
    jwt_audience: str = env_field("learnquest-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Default access token TTL, used by refresh",
    )
    signin_token_ttl_minutes: int = env_field(
        180,
        "SIGNIN_TOKEN_TTL_MINUTES",
        description="Access token TTL for a normal sign-in and auto-login",
    )
    remember_me_token_ttl_days: int = env_field(30, "REMEMBER_ME_TOKEN_TTL_DAYS")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    # Credential hashing
    password_hash_iterations: int = env_field(100_000, "PASSWORD_HASH_ITERATIONS")
    enforce_password_policy: bool = env_field(
        False,
        "ENFORCE_PASSWORD_POLICY",
        description="Reject weak passwords on signup and reset",
    )

    # Lockout
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    stale_failure_minutes: int = env_field(
        60,
        "STALE_FAILURE_MINUTES",
        description="Unlocked failure counters idle this long are swept",
    )
    lockout_sweep_interval_seconds: int = env_field(
        30 * 60, "LOCKOUT_SWEEP_INTERVAL_SECONDS"
    )

    # Verification codes and cookies
    verification_code_ttl_minutes: int = env_field(30, "VERIFICATION_CODE_TTL_MINUTES")
    signup_resend_interval_minutes: int = env_field(
        30,
        "SIGNUP_RESEND_INTERVAL_MINUTES",
        description="Minimum gap before a duplicate signup rotates the code",
    )
    resend_cooldown_minutes: int = env_field(2, "RESEND_COOLDOWN_MINUTES")
    verification_cookie_minutes: int = env_field(100, "VERIFICATION_COOKIE_MINUTES")
    remember_me_cookie_days: int = env_field(30, "REMEMBER_ME_COOKIE_DAYS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Email queue
    email_drain_interval_seconds: float = env_field(5, "EMAIL_DRAIN_INTERVAL_SECONDS")
    email_batch_size: int = env_field(10, "EMAIL_BATCH_SIZE")
    email_max_retry_attempts: int = env_field(3, "EMAIL_MAX_RETRY_ATTEMPTS")
    email_retry_base_minutes: int = env_field(1, "EMAIL_RETRY_BASE_MINUTES")
    email_queue_degraded_depth: int = env_field(100, "EMAIL_QUEUE_DEGRADED_DEPTH")

    # SMTP transport
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_security: SmtpSecurity = env_field(SmtpSecurity.STARTTLS, "SMTP_SECURITY")
    smtp_timeout_seconds: int = env_field(30, "SMTP_TIMEOUT_SECONDS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LearnQuest", "EMAIL_FROM_NAME")
    support_email: str = env_field("support@learnquest.local", "SUPPORT_EMAIL")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

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

    @field_validator("smtp_security")
    @classmethod
    def _validate_smtp_security(cls, value: SmtpSecurity) -> SmtpSecurity:
        return SmtpSecurity(value)

    @field_validator("password_hash_iterations")
    @classmethod
    def _validate_iterations(cls, value: int) -> int:
        if value < MIN_HASH_ITERATIONS:
            raise ValueError(
                f"password_hash_iterations must be at least {MIN_HASH_ITERATIONS}"
            )
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/learnquest"))
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
                if len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
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
