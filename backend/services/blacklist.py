"""Access token revocation (jti denylist).

Access tokens are stateless, so logout can only stop them by remembering their
``jti`` until the token would have expired anyway. An entry past its expiry is
meaningless and is treated as absent.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from config import BlacklistBackend
from services.store import KeyValueStore

logger = logging.getLogger(__name__)

BLACKLIST_KEY_PREFIX = "auth:blacklist:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # SQLite returns naive datetimes; they are always stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenBlacklist(ABC):
    """Abstract revocation list keyed by access token jti."""

    @abstractmethod
    async def blacklist(self, jti: str, expires_at: datetime) -> None:
        """Revoke ``jti`` until ``expires_at``."""

    @abstractmethod
    async def is_blacklisted(self, jti: str) -> bool:
        """Check whether ``jti`` is revoked and the entry is still live."""

    async def start(self) -> None:
        """Start background maintenance, if any."""

    async def stop(self) -> None:
        """Stop background maintenance, if any."""


class InMemoryTokenBlacklist(TokenBlacklist):
    """
    Process-local blacklist with a periodic sweep of expired entries.

    Revocations are lost on restart and not shared between workers.
    """

    def __init__(
        self,
        sweep_interval_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    async def blacklist(self, jti: str, expires_at: datetime) -> None:
        async with self._lock:
            self._entries[jti] = _as_aware(expires_at)

    async def is_blacklisted(self, jti: str) -> bool:
        async with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            return expires_at >= self._clock()

    async def sweep(self) -> int:
        """Evict strictly expired entries. Returns the number removed."""
        async with self._lock:
            now = self._clock()
            expired = [jti for jti, exp in self._entries.items() if exp < now]
            for jti in expired:
                del self._entries[jti]
        if expired:
            logger.debug("Swept %d expired blacklist entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in blacklist sweep task: %s", e)

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Token blacklist sweep task started")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Token blacklist sweep task stopped")


class RedisTokenBlacklist(TokenBlacklist):
    """
    Shared blacklist backed by the key-value store.

    Entries expire on their own via the store TTL, so no sweep is needed.
    Store errors propagate; the caller decides how to degrade.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    @staticmethod
    def key_for(jti: str) -> str:
        return f"{BLACKLIST_KEY_PREFIX}{jti}"

    async def blacklist(self, jti: str, expires_at: datetime) -> None:
        ttl = math.ceil((_as_aware(expires_at) - self._clock()).total_seconds())
        if ttl <= 0:
            # Already expired: validation rejects it anyway
            return
        await self.store.set_with_ttl(self.key_for(jti), "revoked", ttl)

    async def is_blacklisted(self, jti: str) -> bool:
        return await self.store.exists(self.key_for(jti))


def create_blacklist(settings, store: KeyValueStore) -> TokenBlacklist:
    """Select the blacklist variant from ``TOKEN_BLACKLIST_BACKEND``."""
    backend = settings.effective_blacklist_backend
    if backend == BlacklistBackend.REDIS:
        logger.info("Using Redis token blacklist")
        return RedisTokenBlacklist(store)

    if settings.is_production:
        logger.warning(
            "In-memory token blacklist in production: revoked access tokens are "
            "only rejected by the instance that revoked them. Configure REDIS_URL."
        )
    return InMemoryTokenBlacklist(
        sweep_interval_seconds=settings.BLACKLIST_SWEEP_INTERVAL_SECONDS,
    )
