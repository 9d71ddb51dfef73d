"""
Fixed-window rate limiting for calls to Square.

Each (bucket, identity) pair gets its own counter that resets when its window
elapses. `allow()` never blocks: a False answer tells the caller to serve
from cache or defer. Buckets are independent so a burst of inbound webhooks
cannot starve outbound API calls or payment processing.

Two implementations share the same interface:
- InMemoryRateLimiter: single process, lock-guarded dict
- RedisRateLimiter: shared between api/worker processes
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


class RateLimitBucket:
    """Operation classes with independent budgets."""

    PROVIDER_API = "provider-api"
    PAYMENT_PROCESSING = "payment-processing"
    INBOUND_EVENTS = "inbound-events"


@dataclass(frozen=True)
class BucketConfig:
    limit: int
    window_seconds: float


@dataclass
class RateLimitWindow:
    """Counter for one bucket key. Logically empty once `reset_at` has passed."""

    bucket_key: str
    count: int
    reset_at: float


def bucket_configs_from_settings(settings: Settings | None = None) -> dict[str, BucketConfig]:
    settings = settings or get_settings()
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    return {
        RateLimitBucket.PROVIDER_API: BucketConfig(settings.PROVIDER_API_RATE_LIMIT, window),
        RateLimitBucket.PAYMENT_PROCESSING: BucketConfig(
            settings.PAYMENT_PROCESSING_RATE_LIMIT, window
        ),
        RateLimitBucket.INBOUND_EVENTS: BucketConfig(settings.INBOUND_EVENTS_RATE_LIMIT, window),
    }


def make_bucket_key(bucket: str, identity: str = "global") -> str:
    return f"{bucket}:{identity}"


class RateLimiter(ABC):
    """Rate limiter interface used by the cache, payment service and event processor."""

    def __init__(self, configs: dict[str, BucketConfig] | None = None):
        self.configs = configs if configs is not None else bucket_configs_from_settings()

    def config_for(self, bucket: str) -> BucketConfig:
        try:
            return self.configs[bucket]
        except KeyError:
            raise ValueError(f"Unknown rate limit bucket: {bucket}") from None

    @abstractmethod
    async def allow(self, bucket: str, identity: str = "global") -> bool:
        """Consume one slot from the bucket. False (and no increment) when saturated."""

    @abstractmethod
    async def status(self, bucket: str, identity: str = "global") -> dict[str, Any]:
        """Current usage of a bucket, for the operational status route."""


class InMemoryRateLimiter(RateLimiter):
    """Single-process fixed-window limiter."""

    def __init__(
        self,
        configs: dict[str, BucketConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(configs)
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    def _current_window(self, key: str, config: BucketConfig, now: float) -> RateLimitWindow:
        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = RateLimitWindow(key, 0, now + config.window_seconds)
            self._windows[key] = window
        return window

    async def allow(self, bucket: str, identity: str = "global") -> bool:
        config = self.config_for(bucket)
        key = make_bucket_key(bucket, identity)

        with self._lock:
            window = self._current_window(key, config, self._clock())
            if window.count >= config.limit:
                allowed = False
            else:
                window.count += 1
                allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}: limit={config.limit}")
        return allowed

    async def status(self, bucket: str, identity: str = "global") -> dict[str, Any]:
        config = self.config_for(bucket)
        key = make_bucket_key(bucket, identity)
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                count, reset_in = 0, config.window_seconds
            else:
                count, reset_in = window.count, window.reset_at - now

        return {
            "count": count,
            "limit": config.limit,
            "remaining": max(0, config.limit - count),
            "reset_in_seconds": round(reset_in, 3),
        }


class RedisRateLimiter(RateLimiter):
    """
    Fixed-window limiter backed by Redis, shared between processes.

    Keys: rate_limit:{bucket}:{identity}, expiring with the window.
    The GET-then-INCR sequence can let a concurrent caller slip one request
    past the limit; the limiter is advisory so this is accepted.
    """

    KEY_PREFIX = "rate_limit"

    def __init__(self, redis_client, configs: dict[str, BucketConfig] | None = None):
        super().__init__(configs)
        self.redis = redis_client

    def _redis_key(self, bucket: str, identity: str) -> str:
        return f"{self.KEY_PREFIX}:{make_bucket_key(bucket, identity)}"

    async def allow(self, bucket: str, identity: str = "global") -> bool:
        config = self.config_for(bucket)
        key = self._redis_key(bucket, identity)

        current = await self.redis.get(key)
        if current is not None and int(current) >= config.limit:
            logger.warning(f"Rate limit exceeded for {key}: limit={config.limit}")
            return False

        count = await self.redis.incr(key)

        # Set TTL on first request (key creation)
        if count == 1:
            await self.redis.expire(key, int(config.window_seconds))

        return True

    async def status(self, bucket: str, identity: str = "global") -> dict[str, Any]:
        config = self.config_for(bucket)
        key = self._redis_key(bucket, identity)

        current = await self.redis.get(key)
        ttl = await self.redis.ttl(key)
        count = int(current) if current is not None else 0

        return {
            "count": count,
            "limit": config.limit,
            "remaining": max(0, config.limit - count),
            "reset_in_seconds": ttl if ttl and ttl > 0 else config.window_seconds,
        }
