"""Counter stores for the fixed-window rate limiter.

A counter store records one hit against a bucket key and returns the
bucket's window after the hit. The limiter owns the allow/deny decision,
so stores stay interchangeable: an in-process map for single-instance
deployments, Redis for multiple instances sharing one set of counters.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_logger
from vibestudy.app.middleware.rate_limit.models import CounterEntry, CounterWindow

logger = get_logger(__name__)


# Atomic fixed-window hit. The first hit of a window stores its start and
# arms the expiry, so an expired key is the window reset.
FIXED_WINDOW_HIT_SCRIPT = """
    local key = KEYS[1]
    local now_ms = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])

    local count = redis.call('HINCRBY', key, 'count', 1)
    if count == 1 then
        redis.call('HSET', key, 'start', now_ms)
        redis.call('PEXPIRE', key, window_ms)
        return {count, now_ms}
    end

    local start = tonumber(redis.call('HGET', key, 'start'))
    if start == nil then
        -- Lost the start field (e.g. manual edit), restart the window here
        redis.call('HSET', key, 'count', 1, 'start', now_ms)
        redis.call('PEXPIRE', key, window_ms)
        return {1, now_ms}
    end
    return {count, start}
"""


class CounterStore(ABC):
    """Abstract base class for rate limit counter stores."""

    @abstractmethod
    async def hit(self, key: str, window_ms: int, now_ms: int) -> CounterWindow:
        """Record one event for ``key`` and return the bucket's current window.

        Starts a new window at ``now_ms`` when the bucket is unknown or its
        window has elapsed.
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the bucket's window."""

    async def cleanup(self, now_ms: int) -> int:
        """Drop expired buckets. Returns how many were dropped."""
        return 0

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCounterStore(CounterStore):
    """Process-local counter store.

    Memory bounds:
    - OrderedDict gives LRU order, every hit moves its bucket to the end
    - When more than ``max_entries`` buckets exist the oldest 20% are evicted
    - ``cleanup()`` drops buckets whose window has elapsed
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._max_entries = max_entries
        self._entries: OrderedDict[str, CounterEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _enforce_lru_limit(self) -> None:
        if len(self._entries) > self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._entries) - 1)):
                self._entries.popitem(last=False)

    async def hit(self, key: str, window_ms: int, now_ms: int) -> CounterWindow:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or now_ms - entry.window_start_ms >= entry.window_ms:
                entry = CounterEntry(count=0, window_start_ms=now_ms, window_ms=window_ms)
                self._entries[key] = entry
            self._entries.move_to_end(key)
            entry.count += 1
            window = CounterWindow(count=entry.count, window_start_ms=entry.window_start_ms)

            self._enforce_lru_limit()
            return window

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def cleanup(self, now_ms: int) -> int:
        async with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if now_ms - entry.window_start_ms >= entry.window_ms
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rate limit buckets")
        return len(expired)


class RedisCounterStore(CounterStore):
    """Redis-backed counter store shared by every service instance.

    Each hit is one Lua script call, so concurrent instances never race
    between reading and incrementing a counter.

    Redis key format: ``ratelimit:{bucket key}`` (hash with count and start).
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
    ):
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client

    def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    async def hit(self, key: str, window_ms: int, now_ms: int) -> CounterWindow:
        redis_client = self._get_redis()
        result = await redis_client.eval(
            FIXED_WINDOW_HIT_SCRIPT,
            1,  # Number of keys
            self._make_key(key),  # KEYS[1]
            now_ms,  # ARGV[1]
            window_ms,  # ARGV[2]
        )
        return CounterWindow(count=int(result[0]), window_start_ms=int(result[1]))

    async def reset(self, key: str) -> None:
        await self._get_redis().delete(self._make_key(key))

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
