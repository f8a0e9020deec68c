"""Tests for the fixed-window rate limiter and its route dependency."""

from unittest.mock import AsyncMock

import pytest

from idportal.service.errors import CacheUnavailable
from idportal.service.ratelimit import RateLimiter
from idportal.service.runtime import reset_runtime_for_tests
from idportal.storage.marker_cache import MemoryMarkerCache


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryMarkerCache(clock=clock), max_requests=3, window_seconds=60)


class TestRateLimiter:
    async def test_allows_up_to_ceiling(self, limiter):
        results = [await limiter.allow("/auth/login", "10.0.0.1") for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_window_resets(self, limiter, clock):
        for _ in range(4):
            await limiter.allow("/auth/login", "10.0.0.1")
        clock.advance(60)
        assert await limiter.allow("/auth/login", "10.0.0.1") is True

    async def test_keys_are_per_route_and_client(self, limiter):
        for _ in range(3):
            await limiter.allow("/auth/login", "10.0.0.1")
        assert await limiter.allow("/auth/login", "10.0.0.1") is False
        assert await limiter.allow("/auth/login", "10.0.0.2") is True
        assert await limiter.allow("/auth/forgotpw", "10.0.0.1") is True

    async def test_expiry_armed_only_on_first_hit(self):
        cache = AsyncMock()
        cache.incr.side_effect = [1, 2, 3]
        limiter = RateLimiter(cache, max_requests=5, window_seconds=60)
        for _ in range(3):
            await limiter.allow("/auth/login", "10.0.0.1")
        assert cache.expire.await_count == 1

    async def test_disabled(self, clock):
        limiter = RateLimiter(
            MemoryMarkerCache(clock=clock), max_requests=1, window_seconds=60, enabled=False
        )
        assert all([await limiter.allow("/auth/login", "c") for _ in range(5)])

    async def test_fails_open_when_cache_down(self):
        cache = AsyncMock()
        cache.incr.side_effect = CacheUnavailable()
        limiter = RateLimiter(cache, max_requests=1, window_seconds=60)
        results = [await limiter.allow("/auth/login", "10.0.0.1") for _ in range(5)]
        assert results == [True] * 5
        assert cache.incr.await_count == 5


class TestRateLimitedRoutes:
    @pytest.fixture
    def client(self, monkeypatch, make_client):
        monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "2")
        reset_runtime_for_tests()
        return make_client()

    def test_post_rejected_with_429(self, client):
        for _ in range(2):
            assert client.post("/auth/forgotpw", data={"uid": "nobody"}).status_code == 302
        response = client.post("/auth/forgotpw", data={"uid": "nobody"})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_get_is_not_counted(self, client):
        for _ in range(5):
            assert client.get("/auth/forgotpw").status_code == 200
        assert client.post("/auth/forgotpw", data={"uid": "nobody"}).status_code == 302

    def test_forwarded_for_identifies_client(self, client):
        for _ in range(2):
            client.post(
                "/auth/forgotpw", data={"uid": "nobody"}, headers={"X-Forwarded-For": "1.1.1.1"}
            )
        blocked = client.post(
            "/auth/forgotpw", data={"uid": "nobody"}, headers={"X-Forwarded-For": "1.1.1.1"}
        )
        other = client.post(
            "/auth/forgotpw",
            data={"uid": "nobody"},
            headers={"X-Forwarded-For": "2.2.2.2, 1.1.1.1"},
        )
        assert blocked.status_code == 429
        assert other.status_code == 302

    def test_route_template_is_the_key(self, client):
        for idx in range(2):
            client.post(f"/auth/resetpw/bogus{idx}", data={"password": "x"})
        response = client.post("/auth/resetpw/another", data={"password": "x"})
        assert response.status_code == 429
