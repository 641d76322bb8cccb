"""
Counter stores backing the Gateway rate limiter.

The limiter only needs a handful of primitives from its store: an atomic
increment that sets an expiry on the first hit of a window, existence and TTL
checks, and a set-with-expiry for block markers. Redis provides them for
multi-instance deployments; ``InMemoryCounterStore`` covers single-instance
deployments and tests.
"""

import asyncio
import heapq
import math
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger

# TTL sentinels, matching Redis semantics
TTL_NO_EXPIRY = -1
TTL_MISSING = -2


class CounterStore(Protocol):
    """Operations the limiter engine needs from a shared counter store."""

    async def increment(self, key: str, window_seconds: int) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# INCR and the first-hit EXPIRE run as one server-side step
_INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""


class RedisCounterStore:
    """Redis-backed counter store shared by every gateway instance."""

    def __init__(self, redis_url: str, timeout_seconds: float = 2.0,
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger("gateway.ratelimit.store")
        self._redis: Optional[redis.Redis] = client
        self._increment = None

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.timeout_seconds,
                socket_timeout=self.timeout_seconds,
            )
        return self._redis

    async def increment(self, key: str, window_seconds: int) -> int:
        try:
            if self._increment is None:
                self._increment = self._get_redis().register_script(_INCREMENT_SCRIPT)
            count = await self._increment(keys=[key], args=[window_seconds])
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("increment", str(e)) from e
        return int(count)

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._get_redis().exists(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("exists", str(e)) from e

    async def ttl(self, key: str) -> int:
        try:
            return int(await self._get_redis().ttl(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("ttl", str(e)) from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._get_redis().set(key, value, ex=ttl_seconds)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("set", str(e)) from e

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._get_redis().get(key)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("get", str(e)) from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._get_redis().delete(*keys))
        except (RedisError, OSError) as e:
            raise StoreUnavailableError("delete", str(e)) from e

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except (RedisError, OSError) as e:
            self.logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._increment = None
            self.logger.info("Redis connection closed")


class InMemoryCounterStore:
    """Process-local counter store with lazy TTL expiry.

    All mutations happen under one lock so increment-then-compare sequences
    from concurrent requests never observe a stale count. Writes also purge
    every expired key, using a heap ordered by expiry, so keys for subjects
    that never return do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # key -> (value, expires_at or None)
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        # (expires_at, key); may hold stale pairs for rewritten or deleted keys
        self._expiry_heap: List[Tuple[float, str]] = []
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _expire_at(self, key: str, value: str, expires_at: float) -> None:
        self._entries[key] = (value, expires_at)
        heapq.heappush(self._expiry_heap, (expires_at, key))

    def _purge_expired(self) -> None:
        now = self._clock()
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry_heap)
            entry = self._entries.get(key)
            if entry is not None and entry[1] == expires_at:
                del self._entries[key]

    async def increment(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            self._purge_expired()
            entry = self._live(key)
            if entry is None:
                self._expire_at(key, "1", self._clock() + window_seconds)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._entries[key] = (str(count), expires_at)
            return count

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return TTL_MISSING
            _, expires_at = entry
            if expires_at is None:
                return TTL_NO_EXPIRY
            # Whole seconds, never 0 for a live key
            return max(1, math.ceil(expires_at - self._clock()))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._purge_expired()
            self._expire_at(key, value, self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._entries[key]
                    removed += 1
            return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._expiry_heap.clear()
