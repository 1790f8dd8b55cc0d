"""Tests for the credential facade used by the auth flows."""

import pytest

from sessionvault.service.blacklist import BlacklistManager
from sessionvault.service.lockout import LockoutManager
from sessionvault.service.refresh_tokens import RefreshTokenManager
from sessionvault.service.token_service import TokenService
from sessionvault.storage.errors import StoreUnavailableError


@pytest.fixture
def service(store, clock):
    return TokenService(
        store,
        blacklist=BlacklistManager(store),
        refresh_tokens=RefreshTokenManager(
            store, ttl_seconds=7 * 24 * 3600, max_sessions=5, clock=clock.now
        ),
        lockout=LockoutManager(store, max_attempts=5, clock=clock.now),
    )


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_issue_rotate_validate_list(self, service, clock):
        """A rotated-out token stops validating; only the new session is listed."""
        token = await service.issue_refresh_token("userA", "chrome", "1.2.3.4")
        clock.advance(60)
        rotated = await service.rotate_refresh_token("userA", token, "chrome", "1.2.3.4")

        assert rotated is not None
        assert await service.validate_refresh_token("userA", token) is None
        record = await service.validate_refresh_token("userA", rotated)
        assert record is not None
        assert record.user_id == "userA"

        sessions = await service.list_sessions("userA")
        assert len(sessions) == 1
        assert sessions[0].device_info == "chrome"
        assert sessions[0].ip_address == "1.2.3.4"
        assert sessions[0].created_at == clock.now()

    @pytest.mark.asyncio
    async def test_logout_everywhere(self, service):
        first = await service.issue_refresh_token("userA")
        second = await service.issue_refresh_token("userA")

        assert await service.revoke_all_refresh_tokens("userA") is True
        assert await service.validate_refresh_token("userA", first) is None
        assert await service.validate_refresh_token("userA", second) is None
        assert await service.list_sessions("userA") == []

    @pytest.mark.asyncio
    async def test_revoke_single(self, service):
        token = await service.issue_refresh_token("userA")
        assert await service.revoke_refresh_token("userA", token) is True
        assert await service.validate_refresh_token("userA", token) is None

    @pytest.mark.asyncio
    async def test_blacklist_roundtrip(self, service):
        assert await service.blacklist("access-token", 300) is True
        assert await service.is_blacklisted("access-token") is True

    @pytest.mark.asyncio
    async def test_lockout_delegation(self, service):
        for _ in range(4):
            status = await service.record_failed_login("a@example.com")
        assert status.attempts_remaining == 1
        assert (await service.is_account_locked("a@example.com")).locked is False

        locked = await service.record_failed_login("a@example.com")
        assert locked.locked is True
        await service.clear_failed_logins("a@example.com")
        assert (await service.is_account_locked("a@example.com")).locked is False


class TestFailurePolicies:
    @pytest.mark.asyncio
    async def test_outage_separates_open_and_closed_operations(self, service, store):
        await service.blacklist("access-token", 300)
        token = await service.issue_refresh_token("userA")
        store.down = True

        assert await service.is_blacklisted("access-token") is False
        with pytest.raises(StoreUnavailableError):
            await service.validate_refresh_token("userA", token)

    @pytest.mark.asyncio
    async def test_outage_fails_open_for_checks(self, service, store):
        await service.blacklist("access-token", 300)
        store.down = True

        assert service.is_available() is False
        assert await service.is_blacklisted("access-token") is False
        assert (await service.is_account_locked("a@example.com")).locked is False

    @pytest.mark.asyncio
    async def test_outage_fails_soft_for_mutations(self, service, store):
        store.down = True

        assert await service.issue_refresh_token("userA") is None
        assert await service.blacklist("access-token", 300) is False
        assert await service.revoke_refresh_token("userA", "t") is False
        assert await service.revoke_all_refresh_tokens("userA") is False
        assert await service.list_sessions("userA") == []

    @pytest.mark.asyncio
    async def test_outage_fails_closed_for_validation(self, service, store):
        token = await service.issue_refresh_token("userA")
        store.down = True

        with pytest.raises(StoreUnavailableError):
            await service.validate_refresh_token("userA", token)
        with pytest.raises(StoreUnavailableError):
            await service.rotate_refresh_token("userA", token)


class TestValidateReconnect:
    @pytest.mark.asyncio
    async def test_pings_before_validating(self, service, store):
        token = await service.issue_refresh_token("userA")
        assert await service.validate_refresh_token("userA", token) is not None
        assert store.ensure_connected_calls == 1

    @pytest.mark.asyncio
    async def test_recovers_when_ping_reconnects(self, service, store):
        token = await service.issue_refresh_token("userA")
        store.down = True
        store.recover_on_ensure = True

        assert await service.validate_refresh_token("userA", token) is not None

    @pytest.mark.asyncio
    async def test_retries_once_after_mid_call_drop(self, service, store):
        token = await service.issue_refresh_token("userA")
        real_validate = service.refresh_tokens.validate
        calls = []

        async def flaky_validate(user_id, value):
            calls.append(user_id)
            if len(calls) == 1:
                raise StoreUnavailableError("connection reset", operation="get")
            return await real_validate(user_id, value)

        service.refresh_tokens.validate = flaky_validate
        record = await service.validate_refresh_token("userA", token)

        assert record is not None
        assert len(calls) == 2
        assert store.ensure_connected_calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_second_failure(self, service, store):
        async def always_down(user_id, value):
            raise StoreUnavailableError("connection reset", operation="get")

        service.refresh_tokens.validate = always_down
        with pytest.raises(StoreUnavailableError):
            await service.validate_refresh_token("userA", "token")
        assert store.ensure_connected_calls == 2

    @pytest.mark.asyncio
    async def test_unreachable_store_raises(self, service, store):
        store.down = True
        with pytest.raises(StoreUnavailableError):
            await service.validate_refresh_token("userA", "token")
        assert store.ensure_connected_calls == 1
