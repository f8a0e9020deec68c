"""Tests for the marker cache implementations."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from idportal.service.errors import CacheUnavailable
from idportal.storage.marker_cache import (
    MemoryMarkerCache,
    RedisMarkerCache,
    SyncRedisMarkerCache,
)


@pytest.fixture
def cache(clock):
    return MemoryMarkerCache(clock=clock)


class TestMemoryMarkerCache:
    async def test_set_nx_only_once(self, cache):
        assert await cache.set_nx("k", "1", 10) is True
        assert await cache.set_nx("k", "2", 10) is False
        assert await cache.get("k") == "1"

    async def test_set_nx_after_expiry(self, cache, clock):
        await cache.set_nx("k", "1", 10)
        clock.advance(10)
        assert await cache.get("k") is None
        assert await cache.set_nx("k", "2", 10) is True

    async def test_incr_and_expire(self, cache, clock):
        assert await cache.incr("n") == 1
        assert await cache.expire("n", 5) is True
        assert await cache.incr("n") == 2
        clock.advance(5)
        assert await cache.incr("n") == 1

    async def test_incr_keeps_existing_expiry(self, cache, clock):
        await cache.incr("n")
        await cache.expire("n", 5)
        clock.advance(3)
        await cache.incr("n")
        clock.advance(2)
        assert await cache.get("n") is None

    async def test_expire_missing_key(self, cache):
        assert await cache.expire("missing", 5) is False

    async def test_set_without_ttl_persists(self, cache, clock):
        await cache.set("k", "v")
        clock.advance(10**6)
        assert await cache.get("k") == "v"

    async def test_delete(self, cache):
        await cache.set("k", "v", 10)
        assert await cache.delete("k") == 1
        assert await cache.delete("k") == 0
        assert await cache.get("k") is None

    async def test_delete_if_equal(self, cache, clock):
        await cache.set("k", "mine", 10)
        assert await cache.delete_if_equal("k", "theirs") is False
        assert await cache.get("k") == "mine"
        assert await cache.delete_if_equal("k", "mine") is True
        assert await cache.get("k") is None
        assert await cache.delete_if_equal("k", "mine") is False

    async def test_delete_if_equal_ignores_expired(self, cache, clock):
        await cache.set("k", "mine", 10)
        clock.advance(10)
        assert await cache.delete_if_equal("k", "mine") is False

    async def test_incr_non_integer(self, cache):
        await cache.set("k", "not-a-number")
        with pytest.raises(CacheUnavailable):
            await cache.incr("k")


class TestRedisErrorTranslation:
    async def test_async_client_errors_become_cache_unavailable(self):
        cache = RedisMarkerCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        cache.client.get.side_effect = RedisConnectionError("down")
        cache.client.set.side_effect = RedisTimeoutError("slow")
        cache.client.incr.side_effect = RedisConnectionError("down")

        with pytest.raises(CacheUnavailable):
            await cache.get("k")
        with pytest.raises(CacheUnavailable):
            await cache.set_nx("k", "1", 10)
        with pytest.raises(CacheUnavailable):
            await cache.incr("k")

    async def test_async_set_nx_uses_nx_and_ttl(self):
        cache = RedisMarkerCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        cache.client.set.return_value = None

        assert await cache.set_nx("k", "1", 0) is False
        cache.client.set.assert_awaited_once_with("k", "1", ex=1, nx=True)

    async def test_sync_client_errors_become_cache_unavailable(self):
        cache = SyncRedisMarkerCache("redis://localhost:6379/0")
        cache.client = MagicMock()
        cache.client.expire.side_effect = RedisConnectionError("down")
        cache.client.delete.return_value = 1

        with pytest.raises(CacheUnavailable):
            await cache.expire("k", 5)
        assert await cache.delete("k") == 1

    async def test_async_delete_if_equal_runs_script(self):
        cache = RedisMarkerCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        cache.client.eval.return_value = 1

        assert await cache.delete_if_equal("k", "nonce") is True
        script, numkeys, key, value = cache.client.eval.await_args.args
        assert "redis.call(\"del\", KEYS[1])" in script
        assert (numkeys, key, value) == (1, "k", "nonce")

        cache.client.eval.side_effect = RedisConnectionError("down")
        with pytest.raises(CacheUnavailable):
            await cache.delete_if_equal("k", "nonce")

    async def test_sync_client_calls_run_off_the_loop(self):
        cache = SyncRedisMarkerCache("redis://localhost:6379/0")
        cache.client = MagicMock()
        cache.client.set.return_value = True
        cache.client.eval.return_value = 0

        with patch("asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            assert await cache.set_nx("k", "1", 10) is True
            assert await cache.delete_if_equal("k", "other") is False
        assert to_thread.call_count == 2
        cache.client.set.assert_called_once_with("k", "1", ex=10, nx=True)
