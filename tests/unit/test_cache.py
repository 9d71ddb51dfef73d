"""
Unit tests for shared/cache.py - TTL cache with stale fallbacks.

Tests coverage:
- Fresh hits never call the fetcher
- Expired entries are refetched
- Rate-limited reads serve stale data, or raise when nothing is cached
- Fetch failures serve stale data, or propagate when nothing is cached
- Scoped invalidation
- RedisCache serialization
"""

import json
from unittest.mock import AsyncMock

import pytest

from shared.cache import CacheKeys, CacheTTL, InMemoryCache, RedisCache
from shared.rate_limiter import BucketConfig, InMemoryRateLimiter, RateLimitBucket
from shared.square_errors import RateLimitedNoDataError, SquareAPIError
from tests.fakes import ManualClock


@pytest.fixture
def tight_limiter():
    """Provider bucket allowing a single call per minute, on a clock that never advances."""
    return InMemoryRateLimiter(
        {RateLimitBucket.PROVIDER_API: BucketConfig(limit=1, window_seconds=60)},
        clock=ManualClock(),
    )


# ============================================================================
# get_or_fetch()
# ============================================================================


class TestGetOrFetch:
    @pytest.mark.asyncio
    async def test_miss_fetches_and_stores(self, cache):
        fetcher = AsyncMock(return_value=["p1"])

        assert await cache.get_or_fetch("payments:all", 300, fetcher) == ["p1"]

        fetcher.assert_awaited_once()
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_fetcher(self, cache, clock):
        fetcher = AsyncMock(return_value=["p1"])
        await cache.get_or_fetch("payments:all", 300, fetcher)

        clock.advance(299)
        assert await cache.get_or_fetch("payments:all", 300, fetcher) == ["p1"]

        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, cache, clock):
        fetcher = AsyncMock(side_effect=[["old"], ["new"]])
        await cache.get_or_fetch("payments:all", 300, fetcher)

        clock.advance(300)

        assert await cache.get_or_fetch("payments:all", 300, fetcher) == ["new"]

    @pytest.mark.asyncio
    async def test_rate_limited_serves_stale(self, tight_limiter, clock):
        cache = InMemoryCache(rate_limiter=tight_limiter, clock=clock)
        fetcher = AsyncMock(return_value=["stale"])
        await cache.get_or_fetch("payments:all", 300, fetcher)

        clock.advance(301)

        assert await cache.get_or_fetch("payments:all", 300, fetcher) == ["stale"]
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limited_without_entry_raises(self, tight_limiter, clock):
        cache = InMemoryCache(rate_limiter=tight_limiter, clock=clock)
        await tight_limiter.allow(RateLimitBucket.PROVIDER_API)
        fetcher = AsyncMock()

        with pytest.raises(RateLimitedNoDataError) as exc_info:
            await cache.get_or_fetch("payments:recent", 300, fetcher)

        assert exc_info.value.key == "payments:recent"
        fetcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_failure_serves_stale(self, cache, clock):
        fetcher = AsyncMock(side_effect=[["cached"], SquareAPIError("boom", status_code=500)])
        await cache.get_or_fetch("payments:all", 300, fetcher)
        clock.advance(301)

        assert await cache.get_or_fetch("payments:all", 300, fetcher) == ["cached"]

    @pytest.mark.asyncio
    async def test_fetch_failure_without_entry_propagates(self, cache):
        fetcher = AsyncMock(side_effect=SquareAPIError("boom", status_code=500))

        with pytest.raises(SquareAPIError):
            await cache.get_or_fetch("payments:all", 300, fetcher)

        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_no_rate_limiter_always_fetches_when_stale(self, clock):
        cache = InMemoryCache(rate_limiter=None, clock=clock)
        fetcher = AsyncMock(side_effect=[1, 2])

        await cache.get_or_fetch("k", 10, fetcher)
        clock.advance(10)

        assert await cache.get_or_fetch("k", 10, fetcher) == 2


# ============================================================================
# Invalidation
# ============================================================================


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_removes_only_named_keys(self, cache):
        for key in ("payments:all", "payments:recent", "payment:P1"):
            await cache.get_or_fetch(key, 300, AsyncMock(return_value=key))

        removed = await cache.invalidate("payments:all", "payment:P1", "payment:missing")

        assert removed == 2
        assert await cache.get_entry("payments:recent") is not None
        assert await cache.get_entry("payments:all") is None

    @pytest.mark.asyncio
    async def test_invalidate_nothing(self, cache):
        assert await cache.invalidate() == 0

    def test_payment_scopes(self):
        assert CacheKeys.payment_scopes() == [
            "payments:all",
            "payments:recent",
            "analytics:payments",
        ]
        assert CacheKeys.payment_scopes("C1", "P1")[-2:] == [
            "payments:customer:C1",
            "payment:P1",
        ]

    def test_ttls(self):
        assert CacheTTL.PAYMENTS_LIST == 300
        assert CacheTTL.PAYMENT_DETAILS == 600
        assert CacheTTL.CUSTOMER_PAYMENTS == 180
        assert CacheTTL.ANALYTICS == 900


# ============================================================================
# RedisCache
# ============================================================================


class TestRedisCache:
    @pytest.fixture
    def redis_mock(self):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock(return_value=True)
        redis.delete = AsyncMock(return_value=1)
        return redis

    @pytest.mark.asyncio
    async def test_store_keeps_entry_past_ttl(self, redis_mock, clock):
        cache = RedisCache(redis_mock, clock=clock)

        await cache.get_or_fetch("payments:all", 300, AsyncMock(return_value=[{"id": "P1"}]))

        key, payload = redis_mock.set.await_args.args
        assert key == "cache:payments:all"
        assert json.loads(payload)["value"] == [{"id": "P1"}]
        assert redis_mock.set.await_args.kwargs["ex"] == 24 * 3600

    @pytest.mark.asyncio
    async def test_fresh_entry_read_from_redis(self, redis_mock, clock):
        redis_mock.get.return_value = json.dumps(
            {"value": ["hit"], "fetched_at": clock(), "ttl": 300}
        )
        cache = RedisCache(redis_mock, clock=clock)
        fetcher = AsyncMock()

        assert await cache.get_or_fetch("payments:all", 300, fetcher) == ["hit"]
        fetcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_refetched(self, redis_mock, clock):
        redis_mock.get.return_value = "not json"
        cache = RedisCache(redis_mock, clock=clock)

        assert await cache.get_or_fetch("k", 300, AsyncMock(return_value=5)) == 5

    @pytest.mark.asyncio
    async def test_invalidate_prefixes_keys(self, redis_mock, clock):
        cache = RedisCache(redis_mock, clock=clock)

        await cache.invalidate("payments:all", "payment:P1")

        redis_mock.delete.assert_awaited_once_with("cache:payments:all", "cache:payment:P1")
