"""
Unit tests for InboundEventProcessor.

Tests coverage:
- handle_event(): rate limiting and queue back-pressure
- Payment events: update existing, create by reference_id, cache invalidation
- Invoice payment events: mark local invoice paid
- Unknown events ignored, handler failures audited
- Worker lifecycle: start, drain on stop
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from database.models import SyncAction, SyncOutcome
from shared.cache import CacheKeys
from shared.rate_limiter import BucketConfig, InMemoryRateLimiter, RateLimitBucket
from sync.services.inbound_event_processor import InboundEventProcessor
from tests.fakes import ManualClock


def payment_event(payment_id="P1", status="COMPLETED", event_id="evt-1", **payment_fields):
    payment = {
        "id": payment_id,
        "status": status,
        "amount_money": {"amount": 4200, "currency": "CAD"},
        **payment_fields,
    }
    return {
        "event_id": event_id,
        "type": "payment.updated",
        "data": {"type": "payment", "id": payment_id, "object": {"payment": payment}},
    }


def invoice_event(invoice_id="INV1", event_id="evt-2"):
    return {
        "event_id": event_id,
        "type": "invoice.payment_made",
        "data": {"type": "invoice", "id": invoice_id, "object": {"invoice": {"id": invoice_id}}},
    }


@pytest.fixture
def processor(store, rate_limiter, cache):
    return InboundEventProcessor(store, rate_limiter, cache=cache, max_queue_size=10, workers=1)


# ============================================================================
# handle_event()
# ============================================================================


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_event_queued(self, processor):
        assert await processor.handle_event(payment_event()) is True
        assert processor.pending == 1

    @pytest.mark.asyncio
    async def test_rate_limited_event_dropped(self, store):
        limiter = InMemoryRateLimiter(
            {RateLimitBucket.INBOUND_EVENTS: BucketConfig(limit=2, window_seconds=60)},
            clock=ManualClock(),
        )
        processor = InboundEventProcessor(store, limiter, max_queue_size=10, workers=1)

        results = [await processor.handle_event(payment_event(event_id=f"e{i}")) for i in range(3)]

        assert results == [True, True, False]
        assert processor.pending == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self, store, rate_limiter):
        processor = InboundEventProcessor(store, rate_limiter, max_queue_size=1, workers=1)

        assert await processor.handle_event(payment_event(event_id="e1")) is True
        assert await processor.handle_event(payment_event(event_id="e2")) is False


# ============================================================================
# process_event()
# ============================================================================


class TestPaymentEvents:
    @pytest.mark.asyncio
    async def test_existing_payment_updated(self, processor, store):
        local = store.add_payment(
            amount=Decimal("42.00"), status="pending", external_payment_id="P1", reference_id="APT-1"
        )

        await processor.process_event(payment_event("P1", status="COMPLETED"))

        assert local.status == "completed"
        assert local.raw_provider_payload["id"] == "P1"
        attempt = store.attempts(SyncAction.PAYMENT_WEBHOOK_RECEIVED)[0]
        assert attempt.outcome == SyncOutcome.SUCCESS
        assert attempt.details["event_id"] == "evt-1"

    @pytest.mark.asyncio
    async def test_matched_by_reference_id(self, processor, store):
        local = store.add_payment(amount=Decimal("42.00"), status="pending", reference_id="APT-1")

        await processor.process_event(payment_event("P1", reference_id="APT-1"))

        assert local.external_payment_id == "P1"
        assert local.status == "completed"
        assert len(store.payments) == 1

    @pytest.mark.asyncio
    async def test_unknown_payment_with_reference_created(self, processor, store):
        await processor.process_event(payment_event("P2", reference_id="APT-2"))

        created = await store.find_payment(external_payment_id="P2")
        assert created.amount == Decimal("42.00")
        assert created.reference_id == "APT-2"

    @pytest.mark.asyncio
    async def test_unknown_payment_without_reference_ignored(self, processor, store):
        await processor.process_event(payment_event("P3"))

        assert store.payments == {}
        assert len(store.attempts(SyncAction.PAYMENT_WEBHOOK_RECEIVED)) == 1

    @pytest.mark.asyncio
    async def test_payment_scopes_invalidated(self, processor, cache):
        for key in (CacheKeys.PAYMENTS_ALL, CacheKeys.customer_payments("C1"), CacheKeys.payment("P1")):
            await cache.get_or_fetch(key, 300, AsyncMock(return_value=[]))
        await cache.get_or_fetch(CacheKeys.payment("OTHER"), 300, AsyncMock(return_value={}))

        await processor.process_event(payment_event("P1", customer_id="C1"))

        assert await cache.get_entry(CacheKeys.PAYMENTS_ALL) is None
        assert await cache.get_entry(CacheKeys.customer_payments("C1")) is None
        assert await cache.get_entry(CacheKeys.payment("P1")) is None
        assert await cache.get_entry(CacheKeys.payment("OTHER")) is not None


class TestInvoiceEvents:
    @pytest.mark.asyncio
    async def test_invoice_marked_paid(self, processor, store):
        invoice = store.add_invoice(amount=Decimal("100.00"), external_invoice_id="INV1")

        await processor.process_event(invoice_event("INV1"))

        assert invoice.status == "paid"
        assert invoice.paid_at is not None
        assert store.attempts(SyncAction.INVOICE_PAID)[0].target_entity_id == str(invoice.id)

    @pytest.mark.asyncio
    async def test_unknown_invoice_ignored(self, processor, store):
        await processor.process_event(invoice_event("INV-UNKNOWN"))

        assert store.sync_attempts == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored(self, processor, store):
        await processor.process_event({"event_id": "e9", "type": "team_member.created", "data": {}})

        assert store.sync_attempts == []

    @pytest.mark.asyncio
    async def test_malformed_event_audited(self, processor, store):
        await processor.process_event({"event_id": "e-bad", "type": "payment.created", "data": {}})

        attempt = store.attempts(SyncAction.WEBHOOK_PROCESSING_FAILED)[0]
        assert attempt.outcome == SyncOutcome.FAILURE
        assert attempt.target_entity_id == "e-bad"
        assert attempt.details["event_type"] == "payment.created"

    @pytest.mark.asyncio
    async def test_store_failure_audited_not_raised(self, processor, store):
        store.find_payment = AsyncMock(side_effect=RuntimeError("database unavailable"))

        await processor.process_event(payment_event("P1"))

        attempt = store.attempts(SyncAction.WEBHOOK_PROCESSING_FAILED)[0]
        assert attempt.error_detail == "database unavailable"


# ============================================================================
# Worker lifecycle
# ============================================================================


class TestWorkers:
    @pytest.mark.asyncio
    async def test_workers_process_queue(self, processor, store):
        processor.start()
        await processor.handle_event(payment_event("P1", reference_id="APT-1"))
        await processor.handle_event(invoice_event("INV-UNKNOWN"))

        await processor.join()

        assert processor.pending == 0
        assert await store.find_payment(external_payment_id="P1") is not None
        await processor.stop()

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, processor, store):
        await processor.handle_event(payment_event("P1", reference_id="APT-1"))
        processor.start()

        await processor.stop(drain=True, timeout=5)

        assert processor.running is False
        assert processor.pending == 0
        assert len(store.payments) == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, processor):
        processor.start()
        workers = list(processor._workers)

        processor.start()

        assert processor._workers == workers
        await processor.stop(drain=False)

    @pytest.mark.asyncio
    async def test_worker_survives_failing_event(self, processor, store):
        processor.start()
        await processor.handle_event({"event_id": "e-bad", "type": "payment.created", "data": {}})
        await processor.handle_event(payment_event("P1", reference_id="APT-1"))

        await processor.join()

        assert len(store.payments) == 1
        assert processor.running is True
        await processor.stop()
