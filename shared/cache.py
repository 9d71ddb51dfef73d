"""
TTL cache for data fetched from Square, with stale fallbacks.

`get_or_fetch` returns a fresh entry when one exists. Otherwise it asks the
rate limiter for permission to refetch:

- denied + stale entry   -> stale entry (degraded read)
- denied + no entry      -> RateLimitedNoDataError
- fetch fails + stale    -> stale entry, warning logged
- fetch fails + no entry -> the fetch error propagates

Invalidation is by explicit key only. Writes and inbound events clear the
scopes they affect (see CacheKeys), never the whole cache.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from shared.rate_limiter import RateLimitBucket, RateLimiter
from shared.square_errors import RateLimitedNoDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheKeys:
    """Logical cache scopes for Square payment data."""

    PAYMENTS_ALL = "payments:all"
    PAYMENTS_RECENT = "payments:recent"
    PAYMENTS_ANALYTICS = "analytics:payments"

    @staticmethod
    def customer_payments(customer_id: str) -> str:
        return f"payments:customer:{customer_id}"

    @staticmethod
    def payment(payment_id: str) -> str:
        return f"payment:{payment_id}"

    @classmethod
    def payment_scopes(
        cls, customer_id: str | None = None, payment_id: str | None = None
    ) -> list[str]:
        """Keys a payment write can affect: all lists, plus customer/payment scopes when known."""
        keys = [cls.PAYMENTS_ALL, cls.PAYMENTS_RECENT, cls.PAYMENTS_ANALYTICS]
        if customer_id:
            keys.append(cls.customer_payments(customer_id))
        if payment_id:
            keys.append(cls.payment(payment_id))
        return keys


class CacheTTL:
    """Freshness windows in seconds."""

    PAYMENTS_LIST = 5 * 60
    PAYMENT_DETAILS = 10 * 60
    CUSTOMER_PAYMENTS = 3 * 60
    ANALYTICS = 15 * 60


@dataclass
class CacheEntry:
    key: str
    value: Any
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class Cache(ABC):
    """
    Cache interface. Subclasses provide storage; the fetch/fallback policy
    lives here so every backend behaves the same.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rate_limiter = rate_limiter
        self._clock = clock

    @abstractmethod
    async def _load(self, key: str) -> CacheEntry | None: ...

    @abstractmethod
    async def _store(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def _delete(self, keys: tuple[str, ...]) -> int: ...

    async def get_entry(self, key: str) -> CacheEntry | None:
        return await self._load(key)

    async def get_or_fetch(
        self,
        key: str,
        ttl: float,
        fetcher: Callable[[], Awaitable[T]],
        bucket: str = RateLimitBucket.PROVIDER_API,
        identity: str = "global",
    ) -> T:
        """
        Return cached data for `key`, refetching through `fetcher` when stale.

        Args:
            key: Cache key (see CacheKeys)
            ttl: Freshness window in seconds
            fetcher: Zero-argument coroutine function producing the value
            bucket: Rate-limit bucket consulted before refetching
            identity: Caller identity within the bucket

        Raises:
            RateLimitedNoDataError: Throttled and nothing cached
            Exception: Whatever fetcher raised, when nothing is cached
        """
        entry = await self._load(key)
        if entry is not None and entry.is_fresh(self._clock()):
            logger.debug(f"Cache hit: {key}")
            return entry.value

        if self.rate_limiter is not None and not await self.rate_limiter.allow(bucket, identity):
            if entry is not None:
                logger.warning(f"Rate limited, serving stale cache for {key}")
                return entry.value
            raise RateLimitedNoDataError(key, bucket, identity)

        try:
            value = await fetcher()
        except Exception as e:
            if entry is not None:
                logger.warning(f"Fetch failed for {key}, serving stale cache: {e}")
                return entry.value
            raise

        await self._store(CacheEntry(key=key, value=value, fetched_at=self._clock(), ttl=ttl))
        logger.debug(f"Cache miss, stored: {key}")
        return value

    async def invalidate(self, *keys: str) -> int:
        """Remove the given keys. Returns how many entries existed."""
        if not keys:
            return 0
        removed = await self._delete(keys)
        logger.debug(f"Invalidated {removed} cache entries: {', '.join(keys)}")
        return removed


class InMemoryCache(Cache):
    """Process-local cache backed by a lock-guarded dict."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(rate_limiter, clock)
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    async def _load(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    async def _store(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry

    async def _delete(self, keys: tuple[str, ...]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(Cache):
    """
    Cache shared between processes via Redis.

    Entries are JSON documents under cache:{key}. The Redis expiry is much
    longer than the freshness TTL so stale entries remain available as a
    fallback while Square is throttled or unreachable.
    """

    KEY_PREFIX = "cache"
    STALE_RETENTION_SECONDS = 24 * 3600

    def __init__(
        self,
        redis_client,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(rate_limiter, clock)
        self.redis = redis_client

    def _redis_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:{key}"

    async def _load(self, key: str) -> CacheEntry | None:
        raw = await self.redis.get(self._redis_key(key))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CacheEntry(
                key=key, value=data["value"], fetched_at=data["fetched_at"], ttl=data["ttl"]
            )
        except (ValueError, KeyError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    async def _store(self, entry: CacheEntry) -> None:
        payload = json.dumps(
            {"value": entry.value, "fetched_at": entry.fetched_at, "ttl": entry.ttl},
            default=str,
        )
        expiry = max(int(entry.ttl), self.STALE_RETENTION_SECONDS)
        await self.redis.set(self._redis_key(entry.key), payload, ex=expiry)

    async def _delete(self, keys: tuple[str, ...]) -> int:
        return int(await self.redis.delete(*(self._redis_key(k) for k in keys)))
