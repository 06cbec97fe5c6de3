"""Fixed-window attempt counters shared by every request handler.

Each counter is an owner key (IP, IP plus email, or uid), the start of its
window and a hit count. The in-process store suits a single instance; the
Redis store is required once more than one instance serves traffic.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from tollgate.logging import get_logger
from tollgate.service.errors import RateLimitedError
from tollgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_MAX_COUNTERS = 10000


@dataclass
class RateCounter:
    owner_key: str
    window_start: int
    window_seconds: int
    count: int = 0

    def expired(self, now: int) -> bool:
        return now >= self.window_start + self.window_seconds


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limit: int
    window_seconds: int
    message: str = "Too many requests, please try again later"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int


class CounterStore(Protocol):
    async def increment(self, owner_key: str, window_seconds: int) -> Tuple[int, int, int]: ...


class MemoryCounterStore:
    """Single-writer counters guarded by an asyncio lock."""

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._counters: Dict[str, RateCounter] = {}
        self._lock = asyncio.Lock()

    def _prune(self, now: int) -> None:
        for key in [k for k, c in self._counters.items() if c.expired(now)]:
            self._counters.pop(key, None)

    async def increment(self, owner_key: str, window_seconds: int) -> Tuple[int, int, int]:
        now = int(self._clock())
        window_start = now // window_seconds * window_seconds
        async with self._lock:
            if len(self._counters) > _MAX_COUNTERS:
                self._prune(now)
            counter = self._counters.get(owner_key)
            if counter is None or counter.window_start != window_start:
                counter = RateCounter(owner_key, window_start, window_seconds)
                self._counters[owner_key] = counter
            counter.count += 1
            count = counter.count
        return window_start, count, max(1, window_start + window_seconds - now)


class RedisCounterStore:
    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def increment(self, owner_key: str, window_seconds: int) -> Tuple[int, int, int]:
        return await self.cache.increment_counter(owner_key, window_seconds)


class RateLimiter:
    def __init__(self, store: CounterStore) -> None:
        self.store = store

    async def hit(self, rule: RateLimitRule, *owner_parts: str) -> RateDecision:
        if rule.limit <= 0:
            return RateDecision(allowed=True, remaining=0, retry_after=0)
        owner_key = ":".join([rule.name, *(part.lower() for part in owner_parts)])
        _, count, reset_after = await self.store.increment(owner_key, max(1, rule.window_seconds))
        allowed = count <= rule.limit
        return RateDecision(
            allowed=allowed,
            remaining=max(0, rule.limit - count),
            retry_after=0 if allowed else reset_after,
        )

    async def enforce(self, rule: RateLimitRule, *owner_parts: str) -> RateDecision:
        """Count a hit and raise :class:`RateLimitedError` once the window is used up."""
        decision = await self.hit(rule, *owner_parts)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded", rule=rule.name, retry_after=decision.retry_after
            )
            raise RateLimitedError(rule.message, retry_after=decision.retry_after)
        return decision
