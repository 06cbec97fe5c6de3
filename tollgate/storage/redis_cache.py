from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the shared rate-limit counters."""

    # Atomic increment of a fixed window counter; the TTL is set on first hit only
    _WINDOW_COUNTER_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _counter_key(owner_key: str, window_start: int) -> str:
        # Hash the owner key so emails and IPs cannot collide on delimiters
        digest = hashlib.sha256(owner_key.encode("utf-8")).hexdigest()
        return f"rate:{digest}:{window_start}"

    async def increment_counter(self, owner_key: str, window_seconds: int) -> Tuple[int, int, int]:
        """Count one hit for ``owner_key`` in the current fixed window.

        Returns ``(window_start, count, seconds_until_reset)``.
        """
        window_start = int(time.time()) // window_seconds * window_seconds
        count, ttl = await self._window_counter(
            keys=[self._counter_key(owner_key, window_start)],
            args=[window_seconds],
        )
        return window_start, int(count), max(1, int(ttl))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
