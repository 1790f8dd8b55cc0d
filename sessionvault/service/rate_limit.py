from __future__ import annotations

from dataclasses import dataclass

from sessionvault.logging import get_logger
from sessionvault.service.keys import rate_limit_key
from sessionvault.service.policy import FailurePolicy, store_failure_policy
from sessionvault.storage.kv import TTL_PERSISTENT, KeyValueStore


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


def _unthrottled(limiter: "RateLimiter") -> RateLimitStatus:
    return RateLimitStatus(
        allowed=True,
        limit=limiter.limit,
        remaining=limiter.limit,
        reset_seconds=limiter.window_seconds,
    )


class RateLimiter:
    """Fixed-window request counter per client under ``rl:<scope>:<client>``.

    The first hit in a window arms the expiry; the counter is re-armed if
    its TTL was lost. An unreachable store lets the request through.
    """

    def __init__(self, store: KeyValueStore, *, limit: int, window_seconds: int) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.logger = get_logger(__name__)

    @store_failure_policy(FailurePolicy.FAIL_OPEN, default_factory=_unthrottled)
    async def hit(self, scope: str, client: str) -> RateLimitStatus:
        key = rate_limit_key(scope, client)
        batch = self.store.batch()
        incr_at = batch.increment(key)
        ttl_at = batch.ttl(key)
        outcome = await batch.execute()
        if not outcome[incr_at].ok:
            self.logger.warning(
                "rate_limit_counter_failed", scope=scope, error=outcome[incr_at].error
            )
            return _unthrottled(self)
        count = int(outcome[incr_at].value)
        remaining_ttl = outcome[ttl_at].value if outcome[ttl_at].ok else None
        if count == 1 or remaining_ttl == TTL_PERSISTENT:
            await self.store.expire(key, self.window_seconds)
            remaining_ttl = self.window_seconds
        if not isinstance(remaining_ttl, int) or remaining_ttl <= 0:
            remaining_ttl = self.window_seconds

        allowed = count <= self.limit
        if not allowed:
            self.logger.warning(
                "rate_limit_exceeded", scope=scope, count=count, limit=self.limit
            )
        return RateLimitStatus(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_seconds=remaining_ttl,
        )


__all__ = ["RateLimitStatus", "RateLimiter"]
