"""
Payment Service - cached Square payment reads and payment processing.

Reads go through the cache so dashboards keep working (with stale data)
while Square is throttled or down. Writes invalidate only the cache scopes
they affect.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar
from uuid import UUID

from database.models import Payment, SyncAction, SyncOutcome
from database.store import LocalStore
from shared.cache import Cache, CacheKeys, CacheTTL
from shared.config import get_settings
from shared.rate_limiter import RateLimitBucket, RateLimiter
from shared.resilient_api import call_with_retry
from shared.square_client import SquareClient, generate_idempotency_key
from shared.square_errors import RateLimitExceededError, extract_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECENT_PAYMENTS_HOURS = 24
PAYMENT_LIST_DAYS = 30
MAX_PAYMENT_PAGES = 10

SQUARE_PAYMENT_STATUS_MAP = {
    "APPROVED": "completed",
    "COMPLETED": "completed",
    "PENDING": "pending",
    "CANCELED": "cancelled",
    "FAILED": "failed",
}


def map_square_payment_status(square_status: str | None) -> str:
    return SQUARE_PAYMENT_STATUS_MAP.get((square_status or "").upper(), "pending")


def payment_amount(payment: dict[str, Any]) -> Decimal:
    """Square amounts are integer cents."""
    cents = (payment.get("amount_money") or {}).get("amount") or 0
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:
    def __init__(
        self,
        client: SquareClient,
        store: LocalStore,
        cache: Cache,
        rate_limiter: RateLimiter,
        max_retries: int | None = None,
        retry_initial_delay: float = 1.0,
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.max_retries = (
            max_retries if max_retries is not None else get_settings().SQUARE_MAX_RETRIES
        )
        self.retry_initial_delay = retry_initial_delay

    async def _call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        return await call_with_retry(
            func,
            *args,
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            **kwargs,
        )

    async def _list_payments(self, begin: datetime, end: datetime) -> list[dict[str, Any]]:
        payments: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(MAX_PAYMENT_PAGES):
            page, cursor = await self._call(
                self.client.list_payments, begin_time=begin, end_time=end, cursor=cursor
            )
            payments.extend(page)
            if not cursor:
                break
        else:
            logger.warning(f"Payment listing truncated at {MAX_PAYMENT_PAGES} pages")
        return payments

    # =========================================================================
    # Cached reads
    # =========================================================================

    async def list_payments(self) -> list[dict[str, Any]]:
        """Square payments from the last 30 days."""

        async def fetch() -> list[dict[str, Any]]:
            end = datetime.now(UTC)
            return await self._list_payments(end - timedelta(days=PAYMENT_LIST_DAYS), end)

        return await self.cache.get_or_fetch(CacheKeys.PAYMENTS_ALL, CacheTTL.PAYMENTS_LIST, fetch)

    async def get_recent_payments(self) -> list[dict[str, Any]]:
        """Square payments from the last 24 hours."""

        async def fetch() -> list[dict[str, Any]]:
            end = datetime.now(UTC)
            return await self._list_payments(end - timedelta(hours=RECENT_PAYMENTS_HOURS), end)

        return await self.cache.get_or_fetch(
            CacheKeys.PAYMENTS_RECENT, CacheTTL.PAYMENTS_LIST, fetch
        )

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self.cache.get_or_fetch(
            CacheKeys.payment(payment_id),
            CacheTTL.PAYMENT_DETAILS,
            lambda: self._call(self.client.get_payment, payment_id),
        )

    async def get_customer_payments(self, external_customer_id: str) -> list[dict[str, Any]]:
        async def fetch() -> list[dict[str, Any]]:
            payments = await self.list_payments()
            return [p for p in payments if p.get("customer_id") == external_customer_id]

        return await self.cache.get_or_fetch(
            CacheKeys.customer_payments(external_customer_id),
            CacheTTL.CUSTOMER_PAYMENTS,
            fetch,
        )

    async def get_payment_analytics(self) -> dict[str, Any]:
        """Totals over the 30-day payment list, amounts as strings."""

        async def fetch() -> dict[str, Any]:
            payments = await self.list_payments()
            completed = [
                p for p in payments if map_square_payment_status(p.get("status")) == "completed"
            ]
            total = sum((payment_amount(p) for p in completed), Decimal("0.00"))
            average = (total / len(completed)).quantize(Decimal("0.01")) if completed else Decimal("0.00")
            return {
                "total_count": len(payments),
                "completed_count": len(completed),
                "total_amount": str(total),
                "average_amount": str(average),
            }

        return await self.cache.get_or_fetch(
            CacheKeys.PAYMENTS_ANALYTICS, CacheTTL.ANALYTICS, fetch
        )

    async def invalidate_payment_cache(
        self, customer_id: str | None = None, payment_id: str | None = None
    ) -> None:
        await self.cache.invalidate(*CacheKeys.payment_scopes(customer_id, payment_id))

    # =========================================================================
    # Writes
    # =========================================================================

    async def process_payment(
        self,
        reference_id: str,
        source_id: str,
        amount: Decimal,
        customer_id: UUID | None = None,
        external_customer_id: str | None = None,
        note: str | None = None,
    ) -> Payment:
        """
        Charge a card through Square and record the local payment.

        Raises:
            RateLimitExceededError: payment-processing budget spent, try later
            SquareAPIError: Square declined or rejected the payment
        """
        identity = str(customer_id or reference_id)
        if not await self.rate_limiter.allow(RateLimitBucket.PAYMENT_PROCESSING, identity):
            raise RateLimitExceededError(RateLimitBucket.PAYMENT_PROCESSING, identity)

        try:
            square_payment = await self._call(
                self.client.create_payment,
                idempotency_key=generate_idempotency_key(),
                source_id=source_id,
                amount_cents=to_cents(amount),
                customer_id=external_customer_id,
                reference_id=reference_id,
                note=note,
            )
        except Exception as e:
            message, details = extract_error_message(e)
            logger.error(f"Square payment failed for {reference_id}: {message}")
            await self.store.add_sync_attempt(
                action=SyncAction.PAYMENT_FAILED,
                outcome=SyncOutcome.FAILURE,
                target_entity_id=reference_id,
                error_detail=message,
                details={"error": message, "error_details": details, "amount": str(amount)},
            )
            raise

        payment = await self.store.create_payment(
            amount=amount,
            status=map_square_payment_status(square_payment.get("status")),
            method="square",
            external_payment_id=square_payment["id"],
            reference_id=reference_id,
            customer_id=customer_id,
            raw_provider_payload=square_payment,
        )
        await self.store.add_sync_attempt(
            action=SyncAction.PAYMENT_PROCESSED,
            outcome=SyncOutcome.SUCCESS,
            target_entity_id=str(payment.id),
            details={"external_payment_id": square_payment["id"], "amount": str(amount)},
        )
        await self.invalidate_payment_cache(external_customer_id, square_payment["id"])

        logger.info(f"Processed Square payment {square_payment['id']} for {reference_id}")
        return payment

    async def background_sync_payments(self) -> dict[str, int]:
        """
        Create local records for completed Square payments of the last 24 hours
        that carry a reference_id but are missing locally.
        """
        stats = {"checked": 0, "created": 0, "skipped": 0}

        if not await self.rate_limiter.allow(RateLimitBucket.PROVIDER_API, "background-sync"):
            logger.info("Background payment sync rate limited, will retry next cycle")
            stats["skipped"] = 1
            return stats

        end = datetime.now(UTC)
        payments = await self._list_payments(end - timedelta(hours=RECENT_PAYMENTS_HOURS), end)
        completed = [p for p in payments if p.get("status") == "COMPLETED"]
        stats["checked"] = len(completed)

        existing = await self.store.existing_external_payment_ids(p["id"] for p in completed)
        for square_payment in completed:
            if square_payment["id"] in existing or not square_payment.get("reference_id"):
                continue
            await self.store.create_payment(
                amount=payment_amount(square_payment),
                status="completed",
                method="square",
                external_payment_id=square_payment["id"],
                reference_id=square_payment["reference_id"],
                raw_provider_payload=square_payment,
            )
            stats["created"] += 1

        if stats["created"]:
            await self.invalidate_payment_cache()
            logger.info(f"Background payment sync created {stats['created']} payments")

        return stats
