from __future__ import annotations

import functools
from enum import Enum
from typing import Any, Callable, Optional

from sessionvault.logging import get_logger
from sessionvault.storage.errors import StoreError

logger = get_logger(__name__)


class FailurePolicy(str, Enum):
    """What a credential operation does when the key-value store fails.

    FAIL_OPEN: return the permissive default (not blacklisted, not locked).
    FAIL_SOFT: best-effort mutation or listing; return a failure value.
    FAIL_CLOSED: raise, so callers can answer 503 instead of "invalid".
    """

    FAIL_OPEN = "fail_open"
    FAIL_SOFT = "fail_soft"
    FAIL_CLOSED = "fail_closed"


def store_failure_policy(
    policy: FailurePolicy,
    *,
    default: Any = None,
    default_factory: Optional[Callable[[Any], Any]] = None,
):
    """Bind a failure policy to an async manager method.

    ``default_factory`` receives the bound instance, for defaults that depend
    on manager configuration. The policy is exposed as ``func.failure_policy``.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except StoreError as exc:
                if policy is FailurePolicy.FAIL_CLOSED:
                    logger.warning(
                        "store_failure_raised",
                        operation=func.__qualname__,
                        policy=policy.value,
                        error_type=type(exc).__name__,
                        error=exc.message,
                    )
                    raise
                fallback = default_factory(self) if default_factory else default
                logger.warning(
                    "store_failure_degraded",
                    operation=func.__qualname__,
                    policy=policy.value,
                    error_type=type(exc).__name__,
                    error=exc.message,
                )
                return fallback

        wrapper.failure_policy = policy
        return wrapper

    return decorator


def failure_policy_of(func: Callable[..., Any]) -> Optional[FailurePolicy]:
    return getattr(func, "failure_policy", None)


__all__ = ["FailurePolicy", "store_failure_policy", "failure_policy_of"]
