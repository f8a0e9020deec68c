from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from idportal.logging import get_logger
from idportal.service.errors import CacheUnavailable

logger = get_logger(__name__)

# Atomic compare-and-delete; returns the number of keys removed
_DELETE_IF_EQUAL = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class MarkerCache(Protocol):
    """Shared key/value store with per-key expiry.

    Implementations raise ``CacheUnavailable`` for any infrastructure failure
    so callers can choose between failing open and failing closed.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def set_nx(self, key: str, value: str, ttl: int) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def delete_if_equal(self, key: str, value: str) -> bool:
        """Delete ``key`` only while it still holds ``value``."""
        ...

    async def close(self) -> None: ...


@contextlib.contextmanager
def _translate_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error(
            "marker_cache_error",
            operation=operation,
            key=key,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise CacheUnavailable() from exc


class RedisMarkerCache:
    """Marker cache backed by ``redis.asyncio``."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get", key):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with _translate_errors("set", key):
            await self.client.set(key, value, ex=ttl)

    async def set_nx(self, key: str, value: str, ttl: int) -> bool:
        with _translate_errors("set_nx", key):
            return bool(await self.client.set(key, value, ex=max(1, int(ttl)), nx=True))

    async def incr(self, key: str) -> int:
        with _translate_errors("incr", key):
            return int(await self.client.incr(key))

    async def expire(self, key: str, ttl: int) -> bool:
        with _translate_errors("expire", key):
            return bool(await self.client.expire(key, max(1, int(ttl))))

    async def delete(self, key: str) -> int:
        with _translate_errors("delete", key):
            return int(await self.client.delete(key))

    async def delete_if_equal(self, key: str, value: str) -> bool:
        with _translate_errors("delete_if_equal", key):
            return bool(await self.client.eval(_DELETE_IF_EQUAL, 1, key, value))

    async def close(self) -> None:
        """Close Redis connection."""
        await self.client.aclose()


class SyncRedisMarkerCache:
    """Marker cache on a synchronous Redis client.

    Used in test mode: the async client binds its connection pool to the first
    event loop it sees, while each ``TestClient`` runs its own loop. Blocking
    calls run in a worker thread so they never stall the event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get", key):
            return await asyncio.to_thread(self.client.get, key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with _translate_errors("set", key):
            await asyncio.to_thread(self.client.set, key, value, ex=ttl)

    async def set_nx(self, key: str, value: str, ttl: int) -> bool:
        with _translate_errors("set_nx", key):
            return bool(
                await asyncio.to_thread(
                    self.client.set, key, value, ex=max(1, int(ttl)), nx=True
                )
            )

    async def incr(self, key: str) -> int:
        with _translate_errors("incr", key):
            return int(await asyncio.to_thread(self.client.incr, key))

    async def expire(self, key: str, ttl: int) -> bool:
        with _translate_errors("expire", key):
            return bool(await asyncio.to_thread(self.client.expire, key, max(1, int(ttl))))

    async def delete(self, key: str) -> int:
        with _translate_errors("delete", key):
            return int(await asyncio.to_thread(self.client.delete, key))

    async def delete_if_equal(self, key: str, value: str) -> bool:
        with _translate_errors("delete_if_equal", key):
            return bool(
                await asyncio.to_thread(self.client.eval, _DELETE_IF_EQUAL, 1, key, value)
            )

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)


class MemoryMarkerCache:
    """Process-local marker cache for tests and explicit local development.

    Only safe with a single worker process; markers are not shared.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def set_nx(self, key: str, value: str, ttl: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + max(1, int(ttl)))
            return True

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", None)
                return 1
            try:
                count = int(entry[0]) + 1
            except ValueError as exc:
                raise CacheUnavailable("value is not an integer") from exc
            self._data[key] = (str(count), entry[1])
            return count

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + max(1, int(ttl)))
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._data.pop(key, None) is not None else 0

    async def delete_if_equal(self, key: str, value: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != value:
                return False
            del self._data[key]
            return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
