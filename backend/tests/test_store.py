"""
Tests for the shared key-value store backends.
"""

import fakeredis
import pytest
import pytest_asyncio

from config import RateLimitRule, Settings
from middleware.rate_limit import RateLimiter
from services.store import InMemoryStore, RedisStore, create_store


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_first_hit_opens_window(self):
        store = InMemoryStore(clock=FakeClock())

        assert await store.increment_window("k", 60) == (1, 60)

    @pytest.mark.asyncio
    async def test_later_hits_do_not_extend_window(self):
        clock = FakeClock()
        store = InMemoryStore(clock=clock)

        await store.increment_window("k", 60)
        clock.advance(20)
        count, ttl = await store.increment_window("k", 60)

        assert count == 2
        assert ttl == 40

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self):
        clock = FakeClock()
        store = InMemoryStore(clock=clock)

        for _ in range(3):
            await store.increment_window("k", 10)
        clock.advance(10)

        assert await store.increment_window("k", 10) == (1, 10)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        store = InMemoryStore(clock=FakeClock())

        await store.increment_window("a", 60)
        await store.increment_window("a", 60)

        assert (await store.increment_window("b", 60))[0] == 1

    @pytest.mark.asyncio
    async def test_values_expire(self):
        clock = FakeClock()
        store = InMemoryStore(clock=clock)

        await store.set_with_ttl("revoked", "1", 5)
        assert await store.exists("revoked") is True

        clock.advance(5)
        assert await store.exists("revoked") is False

    @pytest.mark.asyncio
    async def test_missing_key_does_not_exist(self):
        assert await InMemoryStore().exists("nope") is False

    @pytest.mark.asyncio
    async def test_cleanup_drops_expired_counters(self):
        clock = FakeClock()
        store = InMemoryStore(clock=clock)

        await store.increment_window("old", 5)
        clock.advance(InMemoryStore._CLEANUP_INTERVAL + 1)
        await store.increment_window("new", 5)

        assert "old" not in store._counters
        assert "new" in store._counters


@pytest_asyncio.fixture
async def fake_redis():
    """In-process Redis that executes Lua, so the real fixed-window script runs."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


class TestRedisStore:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisStore()

    @pytest.mark.asyncio
    async def test_first_hit_opens_window(self, fake_redis):
        store = RedisStore(client=fake_redis)

        assert await store.increment_window("ratelimit:x", 60) == (1, 60)
        assert await fake_redis.ttl("ratelimit:x") == 60

    @pytest.mark.asyncio
    async def test_later_hits_keep_remaining_ttl(self, fake_redis):
        store = RedisStore(client=fake_redis)

        await store.increment_window("ratelimit:x", 60)
        await fake_redis.expire("ratelimit:x", 10)

        assert await store.increment_window("ratelimit:x", 60) == (2, 10)
        assert await fake_redis.ttl("ratelimit:x") == 10

    @pytest.mark.asyncio
    async def test_counter_without_ttl_gets_window_back(self, fake_redis):
        store = RedisStore(client=fake_redis)

        await store.increment_window("ratelimit:x", 60)
        await store.increment_window("ratelimit:x", 60)
        await fake_redis.persist("ratelimit:x")
        assert await fake_redis.ttl("ratelimit:x") == -1

        assert await store.increment_window("ratelimit:x", 60) == (3, 60)
        assert await fake_redis.ttl("ratelimit:x") == 60

    @pytest.mark.asyncio
    async def test_window_restarts_once_key_expires(self, fake_redis):
        store = RedisStore(client=fake_redis)

        for _ in range(3):
            await store.increment_window("ratelimit:x", 10)
        await fake_redis.delete("ratelimit:x")

        assert await store.increment_window("ratelimit:x", 10) == (1, 10)

    @pytest.mark.asyncio
    async def test_limiter_over_redis_blocks_after_limit(self, fake_redis):
        rule = RateLimitRule(name="auth-strict", path_pattern="/api/auth/login", permit_limit=2, window_seconds=60)
        limiter = RateLimiter(RedisStore(client=fake_redis), rules=[rule])

        decisions = [await limiter.hit("/api/auth/login", "203.0.113.10") for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, False]
        assert decisions[-1].reset_seconds == 60

    @pytest.mark.asyncio
    async def test_set_with_ttl_and_exists(self, fake_redis):
        store = RedisStore(client=fake_redis)

        await store.set_with_ttl("auth:blacklist:j", "revoked", 120)

        assert await store.exists("auth:blacklist:j") is True
        assert await store.exists("auth:blacklist:other") is False
        assert 0 < await fake_redis.ttl("auth:blacklist:j") <= 120

    @pytest.mark.asyncio
    async def test_ping_and_close(self):
        store = RedisStore(client=fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer()))

        assert await store.ping() is True
        await store.close()


class TestCreateStore:
    def test_memory_without_redis_url(self, tmp_path):
        settings = Settings(REDIS_URL=None, DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/x.db")
        assert isinstance(create_store(settings), InMemoryStore)

    def test_redis_with_url(self, tmp_path):
        settings = Settings(
            REDIS_URL="redis://localhost:6379/0",
            DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/x.db",
        )
        # from_url does not connect until the first command
        store = create_store(settings)
        assert isinstance(store, RedisStore)
