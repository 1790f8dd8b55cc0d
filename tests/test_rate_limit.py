"""Tests for the per-client login and refresh rate limiter."""

import pytest

from sessionvault.service.keys import rate_limit_key
from sessionvault.service.rate_limit import RateLimiter


@pytest.fixture
def limiter(store):
    return RateLimiter(store, limit=3, window_seconds=900)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter):
        statuses = [await limiter.hit("login", "10.0.0.1") for _ in range(3)]

        assert all(status.allowed for status in statuses)
        assert [status.remaining for status in statuses] == [2, 1, 0]

        blocked = await limiter.hit("login", "10.0.0.1")
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.reset_seconds == 900

    @pytest.mark.asyncio
    async def test_counter_lives_in_its_own_namespace(self, limiter, store):
        await limiter.hit("login", "10.0.0.1")
        assert await store.get(rate_limit_key("login", "10.0.0.1")) == "1"
        assert rate_limit_key("login", "10.0.0.1").startswith("rl:")
        assert await store.ttl(rate_limit_key("login", "10.0.0.1")) == 900

    @pytest.mark.asyncio
    async def test_clients_are_counted_separately(self, limiter):
        for _ in range(3):
            await limiter.hit("login", "10.0.0.1")
        assert (await limiter.hit("login", "10.0.0.1")).allowed is False
        assert (await limiter.hit("login", "10.0.0.2")).allowed is True

    @pytest.mark.asyncio
    async def test_window_expiry_resets_counter(self, limiter, clock):
        for _ in range(4):
            await limiter.hit("login", "10.0.0.1")
        clock.advance(901)
        status = await limiter.hit("login", "10.0.0.1")
        assert status.allowed is True
        assert status.remaining == 2

    @pytest.mark.asyncio
    async def test_lost_window_ttl_is_rearmed(self, limiter, store):
        await limiter.hit("login", "10.0.0.1")
        store._data[rate_limit_key("login", "10.0.0.1")].expires_at = None

        status = await limiter.hit("login", "10.0.0.1")
        assert status.reset_seconds == 900
        assert await store.ttl(rate_limit_key("login", "10.0.0.1")) == 900

    @pytest.mark.asyncio
    async def test_outage_lets_requests_through(self, limiter, store):
        store.down = True
        status = await limiter.hit("login", "10.0.0.1")
        assert status.allowed is True
        assert status.remaining == 3

    @pytest.mark.asyncio
    async def test_counter_failure_lets_requests_through(self, limiter, store):
        store.fail("increment", "rl:")
        assert (await limiter.hit("login", "10.0.0.1")).allowed is True
