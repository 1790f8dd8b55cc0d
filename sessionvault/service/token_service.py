from __future__ import annotations

from typing import List, Optional

from sessionvault.logging import get_logger
from sessionvault.service.blacklist import BlacklistManager
from sessionvault.service.lockout import LockoutManager
from sessionvault.service.policy import FailurePolicy, store_failure_policy
from sessionvault.service.refresh_tokens import RefreshTokenManager
from sessionvault.storage.errors import StoreUnavailableError
from sessionvault.storage.kv import KeyValueStore
from sessionvault.storage.models import LockoutStatus, RefreshTokenRecord, SessionInfo


class TokenService:
    """Credential lifecycle operations exposed to the auth flows.

    Thin facade over the managers; each method inherits the failure policy
    of the manager operation it delegates to.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        blacklist: BlacklistManager,
        refresh_tokens: RefreshTokenManager,
        lockout: LockoutManager,
    ) -> None:
        self.store = store
        self.blacklist_manager = blacklist
        self.refresh_tokens = refresh_tokens
        self.lockout = lockout
        self.logger = get_logger(__name__)

    def is_available(self) -> bool:
        return self.store.is_available()

    async def blacklist(self, access_token: str, remaining_seconds: float) -> bool:
        return await self.blacklist_manager.blacklist(access_token, remaining_seconds)

    async def is_blacklisted(self, access_token: str) -> bool:
        return await self.blacklist_manager.is_blacklisted(access_token)

    async def issue_refresh_token(
        self,
        user_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[str]:
        return await self.refresh_tokens.issue(user_id, device_info, ip_address)

    @store_failure_policy(FailurePolicy.FAIL_CLOSED)
    async def validate_refresh_token(
        self, user_id: str, token: str
    ) -> Optional[RefreshTokenRecord]:
        """Ping the store, then validate; retried once if the store drops mid-call."""
        if not await self.store.ensure_connected():
            raise StoreUnavailableError(
                "credential store unreachable", operation="validate_refresh_token"
            )
        try:
            return await self.refresh_tokens.validate(user_id, token)
        except StoreUnavailableError as exc:
            self.logger.warning(
                "refresh_validate_retry", user_id=user_id, error=exc.message
            )
        if not await self.store.ensure_connected():
            raise StoreUnavailableError(
                "credential store unreachable", operation="validate_refresh_token"
            )
        return await self.refresh_tokens.validate(user_id, token)

    async def rotate_refresh_token(
        self,
        user_id: str,
        old_token: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[str]:
        return await self.refresh_tokens.rotate(user_id, old_token, device_info, ip_address)

    async def revoke_refresh_token(self, user_id: str, token: str) -> bool:
        return await self.refresh_tokens.revoke(user_id, token)

    async def revoke_all_refresh_tokens(self, user_id: str) -> bool:
        return await self.refresh_tokens.revoke_all(user_id)

    async def list_sessions(self, user_id: str) -> List[SessionInfo]:
        return await self.refresh_tokens.list_sessions(user_id)

    async def record_failed_login(self, email: str) -> LockoutStatus:
        return await self.lockout.record_failure(email)

    async def clear_failed_logins(self, email: str) -> None:
        await self.lockout.clear(email)

    async def is_account_locked(self, email: str) -> LockoutStatus:
        return await self.lockout.status(email)


__all__ = ["TokenService"]
