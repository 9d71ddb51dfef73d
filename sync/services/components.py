"""
Process-wide wiring of the sync engine.

Each getter builds its component once (lru_cache) from settings. FastAPI
routes receive them through Depends, so tests swap them with
app.dependency_overrides.
"""

import logging
from functools import lru_cache

from database.store import LocalStore, SqlAlchemyStore
from shared.cache import Cache, InMemoryCache, RedisCache
from shared.config import get_settings
from shared.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from shared.square_client import SquareClient
from sync.services.booking_sync_service import BookingSyncService
from sync.services.inbound_event_processor import InboundEventProcessor
from sync.services.payment_service import PaymentService
from sync.services.reconciliation_job import ReconciliationJob

logger = logging.getLogger(__name__)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    if get_settings().RATE_LIMIT_BACKEND == "redis":
        from shared.redis_client import get_redis_client

        return RedisRateLimiter(get_redis_client())
    return InMemoryRateLimiter()


@lru_cache
def get_cache() -> Cache:
    if get_settings().CACHE_BACKEND == "redis":
        from shared.redis_client import get_redis_client

        return RedisCache(get_redis_client(), rate_limiter=get_rate_limiter())
    return InMemoryCache(rate_limiter=get_rate_limiter())


@lru_cache
def get_square_client() -> SquareClient:
    return SquareClient.from_settings()


@lru_cache
def get_store() -> LocalStore:
    return SqlAlchemyStore()


@lru_cache
def get_booking_sync_service() -> BookingSyncService:
    return BookingSyncService(get_square_client(), get_store(), rate_limiter=get_rate_limiter())


@lru_cache
def get_payment_service() -> PaymentService:
    return PaymentService(get_square_client(), get_store(), get_cache(), get_rate_limiter())


@lru_cache
def get_reconciliation_job() -> ReconciliationJob:
    return ReconciliationJob(
        get_square_client(),
        get_store(),
        sync_service=get_booking_sync_service(),
        rate_limiter=get_rate_limiter(),
    )


@lru_cache
def get_event_processor() -> InboundEventProcessor:
    return InboundEventProcessor(get_store(), get_rate_limiter(), cache=get_cache())
