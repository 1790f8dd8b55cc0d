from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionvault.logging import get_logger
from sessionvault.storage.errors import StoreCommandError, StoreUnavailableError
from sessionvault.storage.kv import Batch, BatchOutcome, CommandResult

_CONNECTIVITY_ERRORS = (
    RedisConnectionError,
    RedisTimeoutError,
    asyncio.TimeoutError,
    OSError,
)


class RedisBatch(Batch):
    """Non-transactional pipeline; every command result is reported separately."""

    def __init__(self, store: "RedisKeyValueStore") -> None:
        super().__init__()
        self._store = store

    async def execute(self) -> BatchOutcome:
        outcome = BatchOutcome()
        if not self._commands:
            return outcome
        pipe = self._store.client.pipeline(transaction=False)
        for name, args in self._commands:
            self._store._queue_on_pipeline(pipe, name, args)
        raw_results = await self._store._guard(
            "batch", pipe.execute(raise_on_error=False)
        )
        for (name, args), raw in zip(self._commands, raw_results):
            key = args[0] if args else ""
            if isinstance(raw, (RedisConnectionError, RedisTimeoutError)):
                self._store._mark_unavailable("batch", raw)
                raise StoreUnavailableError(
                    f"redis connection lost during batched {name}", operation=name
                ) from raw
            if isinstance(raw, Exception):
                outcome.results.append(CommandResult(name=name, key=key, error=str(raw)))
                continue
            outcome.results.append(
                CommandResult(name=name, key=key, value=self._store._normalize(name, raw))
            )
        return outcome


class RedisKeyValueStore:
    """Thin Redis wrapper implementing the credential store contract."""

    # Upper bound for any single command or pipeline round trip
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._available = True

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _mark_unavailable(self, operation: str, exc: BaseException) -> None:
        if self._available:
            self.logger.error(
                "redis_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        self._available = False

    async def _guard(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except _CONNECTIVITY_ERRORS as exc:
            self._mark_unavailable(operation, exc)
            raise StoreUnavailableError(
                f"redis unavailable during {operation}", operation=operation
            ) from exc
        except RedisError as exc:
            raise StoreCommandError(str(exc), operation=operation) from exc
        if not self._available:
            self.logger.info("redis_available_again", operation=operation)
        self._available = True
        return result

    @staticmethod
    def _queue_on_pipeline(pipe: Any, name: str, args: tuple) -> None:
        if name == "get":
            pipe.get(args[0])
        elif name == "set_with_ttl":
            key, value, seconds = args
            pipe.set(key, value, ex=int(seconds))
        elif name == "delete":
            pipe.delete(args[0])
        elif name == "exists":
            pipe.exists(args[0])
        elif name == "ttl":
            pipe.ttl(args[0])
        elif name == "increment":
            pipe.incr(args[0])
        elif name == "expire":
            pipe.expire(args[0], int(args[1]))
        elif name == "add_to_set":
            pipe.sadd(args[0], args[1])
        elif name == "remove_from_set":
            pipe.srem(args[0], args[1])
        elif name == "members_of":
            pipe.smembers(args[0])
        else:
            raise ValueError(f"unsupported batch command: {name}")

    @staticmethod
    def _normalize(name: str, raw: Any) -> Any:
        if name in {"exists", "set_with_ttl", "expire"}:
            return bool(raw)
        if name in {"ttl", "increment", "delete", "add_to_set", "remove_from_set"}:
            return int(raw)
        if name == "members_of":
            return set(raw or ())
        return raw

    async def get(self, key: str) -> Optional[str]:
        return await self._guard("get", self.client.get(key))

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> None:
        await self._guard("set", self.client.set(key, value, ex=int(seconds)))

    async def delete(self, key: str) -> int:
        return int(await self._guard("delete", self.client.delete(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self._guard("exists", self.client.exists(key)))

    async def ttl(self, key: str) -> int:
        return int(await self._guard("ttl", self.client.ttl(key)))

    async def increment(self, key: str) -> int:
        return int(await self._guard("incr", self.client.incr(key)))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._guard("expire", self.client.expire(key, int(seconds))))

    async def add_to_set(self, key: str, member: str) -> int:
        return int(await self._guard("sadd", self.client.sadd(key, member)))

    async def remove_from_set(self, key: str, member: str) -> int:
        return int(await self._guard("srem", self.client.srem(key, member)))

    async def members_of(self, key: str) -> Set[str]:
        return set(await self._guard("smembers", self.client.smembers(key)) or ())

    async def scan_keys(self, pattern: str, *, limit: int = 1000) -> List[str]:
        async def _collect() -> List[str]:
            keys: List[str] = []
            async for key in self.client.scan_iter(match=pattern, count=200):
                keys.append(key)
                if len(keys) >= limit:
                    break
            return keys

        return await self._guard("scan", _collect())

    def batch(self) -> RedisBatch:
        return RedisBatch(self)

    def is_available(self) -> bool:
        return self._available

    async def ensure_connected(self) -> bool:
        """Ping, and on failure drop pooled connections and ping once more."""
        try:
            await self._guard("ping", self.client.ping())
            return True
        except (StoreUnavailableError, StoreCommandError):
            pass
        try:
            await self.client.connection_pool.disconnect()
        except (RedisError, OSError) as exc:
            self.logger.warning("redis_pool_disconnect_failed", error=str(exc))
        try:
            await self._guard("ping", self.client.ping())
        except (StoreUnavailableError, StoreCommandError) as exc:
            self.logger.warning("redis_reconnect_failed", error=exc.message)
            return False
        self.logger.info("redis_reconnected")
        return True

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisKeyValueStore", "RedisBatch"]
