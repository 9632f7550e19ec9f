"""Shared key-value store used for rate-limit counters and the token blacklist.

SECURITY NOTES:
- InMemoryStore is per-process. With more than one worker, rate limits and
  revocations are instance-local. Set REDIS_URL for production.
- Redis commands carry a short socket timeout so a degraded store fails fast;
  callers treat STORE_UNAVAILABLE_ERRORS as "store down" and fail open.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

# Connection-level failures: the store is unreachable or too slow
STORE_UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, OSError)


class KeyValueStore(ABC):
    """Abstract base class for the shared fast store."""

    @abstractmethod
    async def increment_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """
        Atomically increment ``key`` and open a window on the first hit.

        The TTL is set only when the increment produced 1; later increments
        in the same window never extend it.

        Returns:
            Tuple of (count_after_increment, remaining_ttl_seconds)
        """

    @abstractmethod
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        """Set ``key`` to ``value`` expiring after ``ttl_seconds`` (>= 1)."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether an unexpired ``key`` is present."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryStore(KeyValueStore):
    """
    Process-local store with the same fixed-window semantics as Redis.

    WARNING - NOT PROCESS-SAFE: every worker has its own counters.
    """

    _CLEANUP_INTERVAL = 60

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._values: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._last_cleanup = clock()

    async def increment_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        async with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)

            entry = self._counters.get(key)
            if entry is None or entry[1] <= now:
                count, expires_at = 1, now + window_seconds
            else:
                count, expires_at = entry[0] + 1, entry[1]
            self._counters[key] = (count, expires_at)
            return count, max(0, math.ceil(expires_at - now))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._values[key] = (value, self._clock() + ttl_seconds)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return False
            if entry[1] <= self._clock():
                del self._values[key]
                return False
            return True

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self._CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        for key in [k for k, (_, exp) in self._counters.items() if exp <= now]:
            del self._counters[key]
        for key in [k for k, (_, exp) in self._values.items() if exp <= now]:
            del self._values[key]


class RedisStore(KeyValueStore):
    """
    Redis-backed store for multi-instance deployments.

    The fixed-window increment runs as a single Lua script so a crash between
    INCR and EXPIRE can never leave a counter without a TTL.
    """

    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = 0.25,
        client=None,
    ):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    async def increment_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = await self._fixed_window(keys=[key], args=[window_seconds])
        return int(count), int(ttl)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


def create_store(settings) -> KeyValueStore:
    """Pick the store backend from settings (Redis when REDIS_URL is set)."""
    if settings.REDIS_URL:
        logger.info("Using Redis key-value store")
        return RedisStore(settings.REDIS_URL, socket_timeout=settings.REDIS_SOCKET_TIMEOUT)

    logger.warning(
        "Using in-memory key-value store. Rate limits and token revocations are "
        "per-process and lost on restart. Set REDIS_URL for multi-instance deployments."
    )
    return InMemoryStore()
