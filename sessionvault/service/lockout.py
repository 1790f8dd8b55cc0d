from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sessionvault.logging import get_logger, mask_email
from sessionvault.service.errors import ValidationError
from sessionvault.service.keys import lockout_counter_key, lockout_marker_key
from sessionvault.service.policy import FailurePolicy, store_failure_policy
from sessionvault.storage.kv import TTL_MISSING, TTL_PERSISTENT, KeyValueStore
from sessionvault.storage.models import LockoutStatus, parse_iso
from sessionvault.storage.users import normalize_email


def _unlocked(manager: "LockoutManager") -> LockoutStatus:
    return LockoutStatus.unlocked(manager.max_attempts)


class LockoutManager:
    """Failed-login counter per account with a timed lock.

    The lock marker is authoritative while it exists; once it is set further
    failures do not touch the counter. Store outages degrade to "not locked"
    so lockout never becomes an outage of its own.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_attempts: int = 5,
        lockout_seconds: int = 15 * 60,
        window_seconds: int = 15 * 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.window_seconds = window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(__name__)

    def _normalize(self, email: str) -> str:
        if not isinstance(email, str) or not email.strip():
            raise ValidationError("email is required")
        return normalize_email(email)

    def _locked(self, lock_until: datetime, attempts: Optional[int] = None) -> LockoutStatus:
        return LockoutStatus(
            locked=True,
            failed_attempts=attempts if attempts is not None else self.max_attempts,
            attempts_remaining=0,
            lock_until=lock_until,
        )

    async def _active_lock(self, email: str) -> Optional[datetime]:
        """Return the lock expiry if a live marker exists; clears an expired one."""
        marker_key = lockout_marker_key(email)
        raw = await self.store.get(marker_key)
        if raw is None:
            return None
        now = self._clock()
        try:
            lock_until = parse_iso(raw)
        except ValueError:
            remaining = await self.store.ttl(marker_key)
            self.logger.warning("lockout_marker_corrupt", account=mask_email(email))
            if remaining == TTL_MISSING:
                return None
            if remaining == TTL_PERSISTENT:
                # Corrupt marker without expiry; bound it to one lockout period
                await self.store.expire(marker_key, self.lockout_seconds)
                remaining = self.lockout_seconds
            return now + timedelta(seconds=max(1, remaining))
        if lock_until > now:
            return lock_until
        batch = self.store.batch()
        batch.delete(marker_key)
        batch.delete(lockout_counter_key(email))
        outcome = await batch.execute()
        if not outcome.ok:
            self.logger.warning(
                "lockout_expired_marker_cleanup_partial",
                account=mask_email(email),
                failures=outcome.describe_failures(),
            )
        return None

    @store_failure_policy(FailurePolicy.FAIL_OPEN, default_factory=_unlocked)
    async def record_failure(self, email: str) -> LockoutStatus:
        normalized = self._normalize(email)
        lock_until = await self._active_lock(normalized)
        if lock_until is not None:
            return self._locked(lock_until)

        counter_key = lockout_counter_key(normalized)
        batch = self.store.batch()
        incr_at = batch.increment(counter_key)
        ttl_at = batch.ttl(counter_key)
        outcome = await batch.execute()
        if not outcome[incr_at].ok:
            self.logger.warning(
                "lockout_counter_failed",
                account=mask_email(normalized),
                error=outcome[incr_at].error,
            )
            return LockoutStatus.unlocked(self.max_attempts)
        attempts = int(outcome[incr_at].value)
        # Window starts on the first failure; re-armed if the TTL was lost
        if attempts == 1 or (
            outcome[ttl_at].ok and outcome[ttl_at].value == TTL_PERSISTENT
        ):
            await self.store.expire(counter_key, self.window_seconds)

        if attempts >= self.max_attempts:
            lock_until = self._clock() + timedelta(seconds=self.lockout_seconds)
            await self.store.set_with_ttl(
                lockout_marker_key(normalized),
                lock_until.isoformat(),
                self.lockout_seconds,
            )
            self.logger.warning(
                "account_locked",
                account=mask_email(normalized),
                failed_attempts=attempts,
                lock_until=lock_until.isoformat(),
            )
            return self._locked(lock_until, attempts)

        self.logger.info(
            "login_failure_recorded",
            account=mask_email(normalized),
            failed_attempts=attempts,
        )
        return LockoutStatus(
            locked=False,
            failed_attempts=attempts,
            attempts_remaining=self.max_attempts - attempts,
        )

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default=None)
    async def clear(self, email: str) -> None:
        normalized = self._normalize(email)
        batch = self.store.batch()
        batch.delete(lockout_counter_key(normalized))
        batch.delete(lockout_marker_key(normalized))
        outcome = await batch.execute()
        if not outcome.ok:
            self.logger.warning(
                "lockout_clear_partial",
                account=mask_email(normalized),
                failures=outcome.describe_failures(),
            )

    @store_failure_policy(FailurePolicy.FAIL_OPEN, default_factory=_unlocked)
    async def status(self, email: str) -> LockoutStatus:
        normalized = self._normalize(email)
        lock_until = await self._active_lock(normalized)
        if lock_until is not None:
            return self._locked(lock_until)
        raw = await self.store.get(lockout_counter_key(normalized))
        try:
            attempts = int(raw) if raw is not None else 0
        except ValueError:
            attempts = 0
        return LockoutStatus(
            locked=False,
            failed_attempts=attempts,
            attempts_remaining=max(0, self.max_attempts - attempts),
        )


__all__ = ["LockoutManager"]
