"""Tests for the refresh token pointer caches.

MemoryCache is exercised directly with a controllable clock. RedisCache and
SyncRedisCache are driven through a fake client that mimics the handful of
Redis commands they issue, including the compare-and-delete script.
"""

import asyncio
import threading

import pytest

from nexushub.storage.memory_cache import MemoryCache
from nexushub.storage.redis_cache import RedisCache, SyncRedisCache, refresh_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    """Dict-backed subset of the Redis command surface."""

    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.closed = False

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def eval(self, script, numkeys, key, token):
        assert numkeys == 1
        assert "DEL" in script
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0

    def close(self):
        self.closed = True


class AsyncFakeRedis(FakeRedis):
    async def set(self, key, value, ex=None):
        return FakeRedis.set(self, key, value, ex=ex)

    async def get(self, key):
        return FakeRedis.get(self, key)

    async def delete(self, key):
        return FakeRedis.delete(self, key)

    async def eval(self, script, numkeys, key, token):
        return FakeRedis.eval(self, script, numkeys, key, token)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(clock=clock)


def test_refresh_key_format():
    assert refresh_key("u1") == "auth:refresh:u1"


class TestMemoryCache:
    async def test_set_overwrites_previous_token(self, memory_cache):
        await memory_cache.set_refresh_token("u1", "first", 60)
        await memory_cache.set_refresh_token("u1", "second", 60)

        assert await memory_cache.get_refresh_token("u1") == "second"

    async def test_entry_expires_after_ttl(self, memory_cache, clock):
        await memory_cache.set_refresh_token("u1", "token", 60)

        clock.now += 59
        assert await memory_cache.get_refresh_token("u1") == "token"
        clock.now += 1
        assert await memory_cache.get_refresh_token("u1") is None

    async def test_non_positive_ttl_clamped(self, memory_cache, clock):
        await memory_cache.set_refresh_token("u1", "token", 0)

        assert await memory_cache.get_refresh_token("u1") == "token"
        clock.now += 1
        assert await memory_cache.get_refresh_token("u1") is None

    async def test_consume_matches_exact_token(self, memory_cache):
        await memory_cache.set_refresh_token("u1", "token", 60)

        assert await memory_cache.consume_refresh_token("u1", "other") is False
        assert await memory_cache.get_refresh_token("u1") == "token"
        assert await memory_cache.consume_refresh_token("u1", "token") is True
        assert await memory_cache.consume_refresh_token("u1", "token") is False

    async def test_consume_expired_entry_fails(self, memory_cache, clock):
        await memory_cache.set_refresh_token("u1", "token", 10)
        clock.now += 10

        assert await memory_cache.consume_refresh_token("u1", "token") is False

    async def test_delete_missing_is_noop(self, memory_cache):
        await memory_cache.delete_refresh_token("missing")
        assert await memory_cache.get_refresh_token("missing") is None

    async def test_users_are_isolated(self, memory_cache):
        await memory_cache.set_refresh_token("u1", "a", 60)
        await memory_cache.set_refresh_token("u2", "b", 60)
        await memory_cache.delete_refresh_token("u1")

        assert await memory_cache.get_refresh_token("u2") == "b"

    async def test_close_clears_entries(self, memory_cache):
        await memory_cache.set_refresh_token("u1", "token", 60)
        await memory_cache.close()

        assert await memory_cache.get_refresh_token("u1") is None

    def test_concurrent_consume_has_single_winner(self):
        cache = MemoryCache()
        asyncio.run(cache.set_refresh_token("u1", "token", 60))
        results = []
        barrier = threading.Barrier(8)

        def consume():
            barrier.wait()
            results.append(asyncio.run(cache.consume_refresh_token("u1", "token")))

        threads = [threading.Thread(target=consume) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestRedisCache:
    @pytest.fixture
    def redis_cache(self):
        cache = RedisCache.__new__(RedisCache)
        cache.redis_url = "redis://fake"
        cache.client = AsyncFakeRedis()
        return cache

    async def test_set_uses_expiry(self, redis_cache):
        await redis_cache.set_refresh_token("u1", "token", 120)

        assert redis_cache.client.data["auth:refresh:u1"] == "token"
        assert redis_cache.client.expiries["auth:refresh:u1"] == 120

    async def test_set_clamps_expiry(self, redis_cache):
        await redis_cache.set_refresh_token("u1", "token", 0)

        assert redis_cache.client.expiries["auth:refresh:u1"] == 1

    async def test_consume_is_compare_and_delete(self, redis_cache):
        await redis_cache.set_refresh_token("u1", "token", 120)

        assert await redis_cache.consume_refresh_token("u1", "stale") is False
        assert await redis_cache.get_refresh_token("u1") == "token"
        assert await redis_cache.consume_refresh_token("u1", "token") is True
        assert await redis_cache.get_refresh_token("u1") is None

    async def test_delete(self, redis_cache):
        await redis_cache.set_refresh_token("u1", "token", 120)
        await redis_cache.delete_refresh_token("u1")

        assert await redis_cache.get_refresh_token("u1") is None


class TestSyncRedisCache:
    @pytest.fixture
    def sync_cache(self):
        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache.redis_url = "redis://fake"
        cache._sync_client = FakeRedis()
        return cache

    async def test_round_trip_and_consume(self, sync_cache):
        await sync_cache.set_refresh_token("u1", "token", 30)

        assert await sync_cache.get_refresh_token("u1") == "token"
        assert await sync_cache.consume_refresh_token("u1", "token") is True
        assert await sync_cache.consume_refresh_token("u1", "token") is False

    async def test_close(self, sync_cache):
        await sync_cache.close()

        assert sync_cache._sync_client.closed
