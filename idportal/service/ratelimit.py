from __future__ import annotations

import hashlib

from idportal.logging import get_logger
from idportal.service.errors import CacheUnavailable
from idportal.storage.marker_cache import MarkerCache

logger = get_logger(__name__)


class RateLimiter:
    """Fixed-window request counter per (route, client).

    The first request of a window creates the counter and arms its expiry;
    requests beyond ``max_requests`` inside the window are refused. When the
    cache is unreachable the request is allowed.
    """

    def __init__(
        self,
        cache: MarkerCache,
        *,
        max_requests: int = 15,
        window_seconds: int = 300,
        enabled: bool = True,
        prefix: str = "rate",
    ) -> None:
        self.cache = cache
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.enabled = enabled
        self.prefix = prefix

    def _key(self, route: str, client: str) -> str:
        # Hash the components so neither can inject a delimiter
        digest = hashlib.sha256(f"{route}\x00{client}".encode("utf-8")).hexdigest()
        return f"{self.prefix}:{digest}"

    async def allow(self, route: str, client: str) -> bool:
        if not self.enabled or self.max_requests <= 0:
            return True
        key = self._key(route, client)
        try:
            count = await self.cache.incr(key)
            if count == 1:
                await self.cache.expire(key, self.window_seconds)
        except CacheUnavailable:
            logger.warning("rate_limit_cache_unavailable", route=route, client=client)
            return True
        if count > self.max_requests:
            logger.warning(
                "rate_limited",
                route=route,
                client=client,
                count=count,
                limit=self.max_requests,
            )
            return False
        return True
