from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from autohealer.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session backend."""

    database_url: str = env_field(
        "postgresql://localhost:5432/autohealer", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis used for edge rate limiting; in-process buckets otherwise",
    )
    shared_fs_root: str = env_field("/srv/autohealer", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins; local dev hosts when empty",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("wp-autohealer", "JWT_ISSUER")
    jwt_audience: str = env_field("wp-autohealer-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", description="Refresh token lifetime"
    )
    session_ttl_minutes: int = env_field(
        7 * 24 * 60, "SESSION_TTL_MINUTES", description="Session row lifetime"
    )

    # Lockout
    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", description="Consecutive failures before lockout"
    )
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    manual_lock_hours: int = env_field(
        24, "MANUAL_LOCK_HOURS", description="Duration of an administrator lock"
    )

    # Passwords and single-use grants
    password_history_depth: int = env_field(3, "PASSWORD_HISTORY_DEPTH")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # MFA
    mfa_issuer: str = env_field("WP-AutoHealer", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for MFA secret encryption; defaults to JWT_SECRET",
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    backup_code_low_watermark: int = env_field(
        3,
        "BACKUP_CODE_LOW_WATERMARK",
        description="Warn the user when fewer backup codes than this remain",
    )
    emergency_mfa_cooldown_minutes: int = env_field(
        60, "EMERGENCY_MFA_COOLDOWN_MINUTES"
    )

    # Background work
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )

    # Edge rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(3, "RESET_RATE_LIMIT_PER_MINUTE")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST", description="SMTP server host")
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("WP-AutoHealer", "EMAIL_FROM_NAME")

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "lockout_threshold",
        "lockout_duration_minutes",
        "manual_lock_hours",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
        "backup_code_count",
        "session_cleanup_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("password_history_depth", "emergency_mfa_cooldown_minutes")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/autohealer"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
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
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def encryption_key_material(self) -> str:
        return self.mfa_encryption_key or self.jwt_secret


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
