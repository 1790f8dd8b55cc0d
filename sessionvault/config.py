from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sessionvault.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential lifecycle service."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Socket connect/read timeout for the Redis client in seconds",
    )
    redis_operation_timeout: float = env_field(
        5.0,
        "REDIS_OPERATION_TIMEOUT",
        description="Upper bound for a single store call or batch; a timeout counts as store unavailable",
    )
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Use the in-process key-value map instead of Redis",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallback and runtime resets for the test suite",
    )
    shared_fs_root: str = env_field("/srv/sessionvault", "SHARED_FS_ROOT")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionvault", "JWT_ISSUER")
    jwt_audience: str = env_field("nuggets-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime; also the TTL of the record and session index",
    )
    max_sessions_per_user: int = env_field(
        5,
        "MAX_SESSIONS_PER_USER",
        description="Concurrent refresh-token sessions kept per user; oldest evicted first",
    )
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")
    failed_attempt_window_seconds: int = env_field(
        15 * 60, "FAILED_ATTEMPT_WINDOW_SECONDS"
    )
    login_rate_limit: int = env_field(
        5,
        "LOGIN_RATE_LIMIT",
        description="Login and refresh requests allowed per client IP per window",
    )
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    admin_email: str | None = env_field(
        None,
        "ADMIN_EMAIL",
        description="Seed an admin account in the in-process user directory",
    )
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "refresh_token_ttl_seconds",
        "max_sessions_per_user",
        "max_failed_login_attempts",
        "lockout_duration_seconds",
        "failed_attempt_window_seconds",
        "login_rate_limit",
        "login_rate_window_seconds",
        "access_token_ttl_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("redis_socket_timeout", "redis_operation_timeout")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/sessionvault")
        return _shared_jwt_secret(fs_root)


def _shared_jwt_secret(fs_root: Path) -> str:
    """Read the generated signing secret from the shared root, creating it once.

    Access tokens must keep verifying across restarts and across workers
    sharing the same root, so a generated secret is written atomically with
    0600 permissions and reused afterwards.
    """
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        fs_root.chmod(0o700)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup_failed", path=str(fs_root), error=str(exc))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(secret_path), error=str(exc))
        else:
            if len(persisted) >= 32:
                return persisted

    generated = secrets.token_urlsafe(64)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=fs_root, prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", path=str(secret_path), error=str(exc))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
