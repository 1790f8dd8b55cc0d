from __future__ import annotations

from sessionvault.logging import get_logger
from sessionvault.service.hashing import hash_secret
from sessionvault.service.keys import blacklist_key
from sessionvault.service.policy import FailurePolicy, store_failure_policy
from sessionvault.storage.kv import KeyValueStore


class BlacklistManager:
    """Denylist of access tokens revoked before their natural expiry."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default=False)
    async def blacklist(self, access_token: str, remaining_seconds: float) -> bool:
        if not isinstance(access_token, str) or not access_token:
            self.logger.warning("blacklist_rejected_empty_token")
            return False
        # Entry must not outlive the token itself
        ttl = max(1, int(remaining_seconds))
        token_hash = hash_secret(access_token)
        await self.store.set_with_ttl(blacklist_key(token_hash), "1", ttl)
        self.logger.info("access_token_blacklisted", ttl_seconds=ttl)
        return True

    @store_failure_policy(FailurePolicy.FAIL_OPEN, default=False)
    async def is_blacklisted(self, access_token: str) -> bool:
        if not isinstance(access_token, str) or not access_token:
            return False
        return await self.store.exists(blacklist_key(hash_secret(access_token)))


__all__ = ["BlacklistManager"]
