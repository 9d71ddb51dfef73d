"""
Inbound Event Processor - queued handling of Square webhook events.

The webhook route only calls handle_event(), which applies the inbound-events
rate limit and enqueues the event. Worker tasks process the queue off the
request path:

    payment.created / payment.updated -> upsert local payment, invalidate cache
    invoice.payment_made              -> mark local invoice paid
    anything else                     -> logged and ignored

A dropped event (rate limited or queue full) is not lost: the route answers
non-2xx and Square redelivers it later. Handler failures are audited as
webhook_processing_failed and never reach the HTTP response.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from database.models import SyncAction, SyncOutcome
from database.store import LocalStore
from shared.cache import Cache, CacheKeys
from shared.config import get_settings
from shared.rate_limiter import RateLimitBucket, RateLimiter
from shared.square_errors import extract_error_message
from sync.services.payment_service import map_square_payment_status, payment_amount

logger = logging.getLogger(__name__)

PAYMENT_EVENT_TYPES = {"payment.created", "payment.updated"}
INVOICE_PAYMENT_EVENT_TYPES = {"invoice.payment_made"}


class InboundEventProcessor:
    """
    Bounded queue + worker tasks for Square events.

    Args:
        store: Local store
        rate_limiter: Consulted on the inbound-events bucket
        cache: Payment cache scopes are invalidated after payment events
        max_queue_size: Events beyond this are dropped (back-pressure)
        workers: Number of concurrent worker tasks
    """

    def __init__(
        self,
        store: LocalStore,
        rate_limiter: RateLimiter,
        cache: Cache | None = None,
        max_queue_size: int | None = None,
        workers: int | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.worker_count = workers or settings.EVENT_WORKERS
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=max_queue_size or settings.EVENT_QUEUE_MAX_SIZE
        )
        self._workers: list[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    async def handle_event(self, event: dict[str, Any]) -> bool:
        """
        Accept an event for deferred processing.

        Returns:
            True if queued, False if dropped (rate limited or queue full)
        """
        event_id = event.get("event_id")
        event_type = event.get("type")

        if not await self.rate_limiter.allow(RateLimitBucket.INBOUND_EVENTS):
            logger.warning(
                f"Dropping Square event {event_id} ({event_type}): rate limited",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return False

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Dropping Square event {event_id} ({event_type}): queue full",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return False

        logger.debug(f"Queued Square event {event_id} ({event_type})")
        return True

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"square-events-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"Inbound event processor started with {self.worker_count} workers")

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: float = 10.0) -> None:
        """Stop workers, first draining the queue when `drain` is set."""
        if drain and self.running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    f"Event queue not drained within {timeout}s, {self.pending} events left"
                )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Inbound event processor stopped")

    async def _worker(self, number: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process_event(event)
            finally:
                self._queue.task_done()

    async def process_event(self, event: dict[str, Any]) -> None:
        """Dispatch one event. Failures are audited, never raised."""
        event_id = event.get("event_id")
        event_type = event.get("type")

        try:
            if event_type in PAYMENT_EVENT_TYPES:
                await self._handle_payment_event(event)
            elif event_type in INVOICE_PAYMENT_EVENT_TYPES:
                await self._handle_invoice_payment(event)
            else:
                logger.info(f"Ignoring Square event type: {event_type}")
        except Exception as e:
            message, details = extract_error_message(e)
            logger.error(
                f"Failed to process Square event {event_id} ({event_type}): {message}",
                extra={"event_id": event_id, "event_type": event_type},
                exc_info=True,
            )
            try:
                await self.store.add_sync_attempt(
                    action=SyncAction.WEBHOOK_PROCESSING_FAILED,
                    outcome=SyncOutcome.FAILURE,
                    target_entity_id=event_id,
                    error_detail=message,
                    details={"event_type": event_type, "error_details": details},
                )
            except Exception as audit_error:
                logger.error(f"Failed to audit webhook failure {event_id}: {audit_error}")

    async def _handle_payment_event(self, event: dict[str, Any]) -> None:
        payment = event["data"]["object"]["payment"]
        external_id = payment["id"]
        reference_id = payment.get("reference_id")
        status = map_square_payment_status(payment.get("status"))

        local = await self.store.find_payment(
            external_payment_id=external_id, reference_id=reference_id
        )
        if local is not None:
            await self.store.update_payment(
                local.id,
                status=status,
                external_payment_id=external_id,
                raw_provider_payload=payment,
            )
            logger.info(f"Payment {local.id} updated from Square: status={status}")
        elif reference_id:
            created = await self.store.create_payment(
                amount=payment_amount(payment),
                status=status,
                method="square",
                external_payment_id=external_id,
                reference_id=reference_id,
                raw_provider_payload=payment,
            )
            logger.info(f"Payment {created.id} created from Square payment {external_id}")
        else:
            logger.info(f"Square payment {external_id} has no local match or reference_id")

        await self.store.add_sync_attempt(
            action=SyncAction.PAYMENT_WEBHOOK_RECEIVED,
            outcome=SyncOutcome.SUCCESS,
            target_entity_id=external_id,
            details={"event_id": event.get("event_id"), "event_type": event.get("type"), "status": status},
        )

        if self.cache is not None:
            await self.cache.invalidate(
                *CacheKeys.payment_scopes(payment.get("customer_id"), external_id)
            )

    async def _handle_invoice_payment(self, event: dict[str, Any]) -> None:
        invoice = event["data"]["object"]["invoice"]
        external_id = invoice["id"]

        local = await self.store.find_invoice_by_external_id(external_id)
        if local is None:
            logger.info(f"Square invoice {external_id} has no local invoice, nothing to update")
            return

        await self.store.update_invoice(local.id, status="paid", paid_at=datetime.now(UTC))
        await self.store.add_sync_attempt(
            action=SyncAction.INVOICE_PAID,
            outcome=SyncOutcome.SUCCESS,
            target_entity_id=str(local.id),
            details={"event_id": event.get("event_id"), "external_invoice_id": external_id},
        )
        logger.info(f"Invoice {local.id} marked paid from Square invoice {external_id}")

        if self.cache is not None:
            await self.cache.invalidate(*CacheKeys.payment_scopes())
