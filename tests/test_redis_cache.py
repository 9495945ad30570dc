"""Unit tests for RedisCache with a mocked client (no Redis server needed)."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cobaltauth.storage.redis_cache import CounterCheck, RedisCache, blacklist_key


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.set = AsyncMock()
    client.exists = AsyncMock(return_value=0)
    client.delete = AsyncMock(return_value=0)
    client.aclose = AsyncMock()
    client.register_script.return_value = AsyncMock()
    return client


@pytest.fixture
def cache(redis_client):
    with patch("cobaltauth.storage.redis_cache.aioredis.from_url", return_value=redis_client):
        yield RedisCache("redis://localhost:6379/0", socket_timeout=2.0)


class TestConstruction:
    def test_client_uses_timeouts(self, redis_client):
        with patch(
            "cobaltauth.storage.redis_cache.aioredis.from_url", return_value=redis_client
        ) as from_url:
            RedisCache("redis://cache:6379/1", socket_timeout=1.5)
        _, kwargs = from_url.call_args
        assert kwargs["socket_timeout"] == 1.5
        assert kwargs["socket_connect_timeout"] == 1.5
        assert kwargs["decode_responses"] is True

    def test_verify_connection_pings_with_sync_client(self, cache):
        sync_client = MagicMock()
        with patch("cobaltauth.storage.redis_cache.Redis.from_url", return_value=sync_client):
            cache.verify_connection()
        sync_client.ping.assert_called_once()
        sync_client.close.assert_called_once()

    def test_verify_connection_propagates_failure(self, cache):
        sync_client = MagicMock()
        sync_client.ping.side_effect = ConnectionError("refused")
        with patch("cobaltauth.storage.redis_cache.Redis.from_url", return_value=sync_client):
            with pytest.raises(ConnectionError):
                cache.verify_connection()
        sync_client.close.assert_called_once()


class TestBlacklist:
    async def test_add_sets_hashed_key_with_ttl(self, cache, redis_client):
        await cache.blacklist_add("raw-token", 120)
        redis_client.set.assert_awaited_once_with(blacklist_key("raw-token"), "1", ex=120)

    async def test_add_with_no_ttl_is_skipped(self, cache, redis_client):
        await cache.blacklist_add("raw-token", 0)
        redis_client.set.assert_not_awaited()

    async def test_contains(self, cache, redis_client):
        redis_client.exists.return_value = 1
        assert await cache.blacklist_contains("raw-token") is True
        redis_client.exists.assert_awaited_once_with(blacklist_key("raw-token"))


class TestCounters:
    async def test_allowed_result_parsing(self, cache):
        cache._counter_script.return_value = [1, 0, 57, 3, 12]
        check = await cache.check_counters(
            [("ratelimit:chat:user:u:minute", 20, 60), ("quota:chat:user:u:daily", 100, 86400)]
        )

        assert check == CounterCheck(True, 0, 57, [3, 12])
        _, kwargs = cache._counter_script.call_args
        assert kwargs["keys"] == ["ratelimit:chat:user:u:minute", "quota:chat:user:u:daily"]
        assert kwargs["args"] == [20, 60, 100, 86400]

    async def test_refused_result_parsing(self, cache):
        cache._counter_script.return_value = [0, 2, 3600, 100]
        check = await cache.check_counters([("a", 20, 60), ("b", 100, 86400)])
        assert check == CounterCheck(False, 2, 3600, [100])

    async def test_negative_ttl_clamped(self, cache):
        cache._counter_script.return_value = [1, 0, -1, 1]
        check = await cache.check_counters([("a", 5, 60)])
        assert check.retry_after == 0

    async def test_get_counter(self, cache, redis_client):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=["4", 30])
        redis_client.pipeline.return_value = pipe

        assert await cache.get_counter("ratelimit:login:1.2.3.4") == (4, 30)
        pipe.get.assert_called_once_with("ratelimit:login:1.2.3.4")
        pipe.ttl.assert_called_once_with("ratelimit:login:1.2.3.4")

    async def test_get_missing_counter(self, cache, redis_client):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[None, -2])
        redis_client.pipeline.return_value = pipe
        assert await cache.get_counter("absent") == (0, 0)

    async def test_reset_counters(self, cache, redis_client):
        redis_client.delete.return_value = 2
        assert await cache.reset_counters("a", "b") == 2
        redis_client.delete.assert_awaited_once_with("a", "b")

    async def test_reset_nothing(self, cache, redis_client):
        assert await cache.reset_counters() == 0
        redis_client.delete.assert_not_awaited()

    async def test_close(self, cache, redis_client):
        await cache.close()
        redis_client.aclose.assert_awaited_once()
