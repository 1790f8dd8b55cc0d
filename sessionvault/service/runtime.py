from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionvault.config import Settings, get_settings, reset_settings_cache
from sessionvault.logging import get_logger
from sessionvault.service.auth import AuthService
from sessionvault.service.blacklist import BlacklistManager
from sessionvault.service.lockout import LockoutManager
from sessionvault.service.rate_limit import RateLimiter
from sessionvault.service.refresh_tokens import RefreshTokenManager
from sessionvault.service.sessions import SessionQuery
from sessionvault.service.token_service import TokenService
from sessionvault.service.tokens import AccessTokenCodec
from sessionvault.storage.memory import MemoryKeyValueStore
from sessionvault.storage.redis_cache import RedisKeyValueStore
from sessionvault.storage.users import MemoryUserDirectory

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Union[RedisKeyValueStore, MemoryKeyValueStore]:
    """Redis when reachable; the in-process map only where fallback is allowed."""
    if settings.use_memory_cache:
        logger.info("kv_store_memory_configured")
        return MemoryKeyValueStore()

    redis_error: Exception | None = None
    if settings.redis_url:
        store = RedisKeyValueStore(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            operation_timeout=settings.redis_operation_timeout,
        )
        try:
            store.verify_connection()
            return store
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for refresh tokens, the access-token blacklist and lockout; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; sessions, blacklist entries and "
            "lockout counters are in-process only and lost on restart."
        ),
        mode=fallback_mode,
    )
    return MemoryKeyValueStore()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.store = build_store(self.settings)
        self.session_query = SessionQuery(self.store)
        self.blacklist = BlacklistManager(self.store)
        self.refresh_tokens = RefreshTokenManager(
            self.store,
            ttl_seconds=self.settings.refresh_token_ttl_seconds,
            max_sessions=self.settings.max_sessions_per_user,
            session_query=self.session_query,
        )
        self.lockout = LockoutManager(
            self.store,
            max_attempts=self.settings.max_failed_login_attempts,
            lockout_seconds=self.settings.lockout_duration_seconds,
            window_seconds=self.settings.failed_attempt_window_seconds,
        )
        self.tokens = TokenService(
            self.store,
            blacklist=self.blacklist,
            refresh_tokens=self.refresh_tokens,
            lockout=self.lockout,
        )
        self.rate_limiter = RateLimiter(
            self.store,
            limit=self.settings.login_rate_limit,
            window_seconds=self.settings.login_rate_window_seconds,
        )
        self.codec = AccessTokenCodec(self.settings)
        self.directory = MemoryUserDirectory()
        if self.settings.admin_email and self.settings.admin_password:
            self.directory.create_user(
                self.settings.admin_email, self.settings.admin_password, role="admin"
            )
            logger.info("runtime_admin_seeded")
        self.auth = AuthService(self.tokens, self.codec, self.directory)
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            max_sessions_per_user=self.settings.max_sessions_per_user,
            refresh_token_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )

    async def close(self) -> None:
        """Release the store connection pool; called from the app lifespan."""
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "build_store", "get_runtime", "reset_runtime_for_tests"]
