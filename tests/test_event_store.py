"""
Tests for the event store and exactly-once event processing.
"""
from datetime import timedelta
from typing import Any, Optional

import pytest
from sqlalchemy import func, select

from billing_events.core.errors import BillingError, ProcessorTransientFailure, ResourceNotFound
from billing_events.core.event_store import EventProcessor
from billing_events.core.router import EventRouter
from billing_events.database.models import (
    Event,
    EventSource,
    ProcessedEvent,
    Subscription,
    Transaction,
    TransactionType,
    unix_timestamp,
    utc_now,
)
from billing_events.services import Services
from tests.factories import store_event

SUBSCRIPTION_DATA = {
    "id": "sub_evt",
    "customer_id": "cus_1",
    "product_id": "prod_1",
    "account_id": "acct_1",
    "price": {"amount_type": "fixed", "price_amount": 2000},
}


async def count(services: Services, model: Any) -> int:
    async with services.database.session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


def processor_with(
    services: Services, event_type: str, handler: Any, max_age: Optional[timedelta] = None
) -> EventProcessor:
    router = EventRouter()
    router.register(event_type, handler)
    return EventProcessor(services.database.session_factory, services.store, router, max_age)


async def write_transaction(db: Any, event: Event) -> None:
    db.add(
        Transaction(
            type=TransactionType.PAYMENT.value,
            amount=100,
            currency="usd",
            account_id="acct_side_effect",
        )
    )
    await db.flush()


class TestEventStore:
    """Test suite for EventStore."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_append_is_idempotent(self, services: Services) -> None:
        event = await store_event(services, "subscription.created", SUBSCRIPTION_DATA)
        duplicate = Event(
            id=event.id,
            type=event.type,
            source=EventSource.PROCESSOR.value,
            timestamp=event.timestamp,
            payload={},
        )

        assert await services.store.append(duplicate) is False
        stored = await services.store.get(event.id)
        assert stored.payload == SUBSCRIPTION_DATA

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_event(self, services: Services) -> None:
        with pytest.raises(ResourceNotFound):
            await services.store.get("evt_missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_filters(self, services: Services) -> None:
        base = utc_now() - timedelta(hours=1)
        await store_event(services, "payout.paid", {"payout_id": "po_1"}, created_at=base)
        await store_event(
            services,
            "payout.failed",
            {"payout_id": "po_2"},
            created_at=base + timedelta(minutes=10),
        )
        await store_event(
            services,
            "order.refunded",
            {"order_id": "ord_1"},
            created_at=base + timedelta(minutes=20),
        )

        payouts = await services.store.list(event_type="payout.*")
        assert [event.type for event in payouts] == ["payout.failed", "payout.paid"]

        exact = await services.store.list(event_type="order.refunded")
        assert len(exact) == 1

        since = unix_timestamp(base + timedelta(minutes=5))
        recent = await services.store.list(since=since, source=EventSource.PROCESSOR.value)
        assert {event.type for event in recent} == {"payout.failed", "order.refunded"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_unprocessed(self, services: Services) -> None:
        old = utc_now() - timedelta(minutes=30)
        pending = await store_event(services, "payout.paid", {}, created_at=old)
        processed = await store_event(services, "payout.failed", {}, created_at=old)
        await store_event(services, "order.refunded", {})

        async with services.database.session_factory() as db:
            assert await services.store.record_if_new(db, processed.id)
            await db.commit()

        cutoff = utc_now() - timedelta(minutes=5)
        unprocessed = await services.store.list_unprocessed(older_than=cutoff)

        assert [event.id for event in unprocessed] == [pending.id]


class TestEventProcessor:
    """Test suite for EventProcessor."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_applied_once(self, services: Services) -> None:
        event = await store_event(services, "subscription.created", SUBSCRIPTION_DATA)

        assert await services.event_processor.process(event.id) == "success"
        assert await services.event_processor.process(event.id) == "duplicate"

        assert await count(services, Subscription) == 1
        assert await services.store.is_processed(event.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_rolls_back_handler_effects(self, services: Services) -> None:
        async def failing(db: Any, event: Event) -> None:
            await write_transaction(db, event)
            raise RuntimeError("handler crashed")

        event = await store_event(services, "payout.paid", {"payout_id": "po_1"})
        processor = processor_with(services, "payout.paid", failing)

        with pytest.raises(RuntimeError):
            await processor.process(event.id)

        assert await count(services, Transaction) == 0
        assert not await services.store.is_processed(event.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_event_can_be_replayed(self, services: Services) -> None:
        attempts = []

        async def flaky(db: Any, event: Event) -> None:
            attempts.append(event.id)
            await write_transaction(db, event)
            if len(attempts) == 1:
                raise ProcessorTransientFailure("processor timeout")

        event = await store_event(services, "payout.paid", {"payout_id": "po_1"})
        processor = processor_with(services, "payout.paid", flaky)

        assert await processor.process_safely(event.id) is None
        assert await processor.process(event.id) == "success"

        assert len(attempts) == 2
        assert await count(services, Transaction) == 1
        assert await services.store.is_processed(event.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_event_rejected_and_not_replayed(self, services: Services) -> None:
        async def invalid(db: Any, event: Event) -> None:
            await write_transaction(db, event)
            raise BillingError("Event is missing 'payout_id'")

        event = await store_event(services, "payout.paid", {})
        processor = processor_with(services, "payout.paid", invalid)

        assert await processor.process(event.id) == "rejected"
        assert await count(services, Transaction) == 0
        assert await services.store.is_processed(event.id)

        cutoff = utc_now() + timedelta(minutes=1)
        assert await services.store.list_unprocessed(older_than=cutoff) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_event_abandoned_once_too_old(self, services: Services) -> None:
        async def crashing(db: Any, event: Event) -> None:
            await write_transaction(db, event)
            raise RuntimeError("handler crashed")

        old = utc_now() - timedelta(days=4)
        fresh = await store_event(services, "payout.paid", {"payout_id": "po_1"})
        expired = await store_event(services, "payout.paid", {"payout_id": "po_2"}, created_at=old)
        processor = processor_with(services, "payout.paid", crashing, max_age=timedelta(days=3))

        with pytest.raises(RuntimeError):
            await processor.process(fresh.id)
        assert await processor.process(expired.id) == "rejected"

        assert await count(services, Transaction) == 0
        assert not await services.store.is_processed(fresh.id)
        assert await services.store.is_processed(expired.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retryable_error_abandoned_once_too_old(self, services: Services) -> None:
        async def unavailable(db: Any, event: Event) -> None:
            raise ProcessorTransientFailure("processor timeout")

        old = utc_now() - timedelta(days=4)
        event = await store_event(services, "payout.paid", {"payout_id": "po_1"}, created_at=old)

        without_limit = processor_with(services, "payout.paid", unavailable)
        with pytest.raises(ProcessorTransientFailure):
            await without_limit.process(event.id)

        limited = processor_with(services, "payout.paid", unavailable, max_age=timedelta(days=3))
        assert await limited.process(event.id) == "rejected"
        assert await services.store.is_processed(event.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_type_marked_processed(self, services: Services) -> None:
        event = await store_event(services, "customer.updated", {"id": "cus_1"})

        assert await services.event_processor.process(event.id) == "no_handler"
        assert await services.store.is_processed(event.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_id(self, services: Services) -> None:
        with pytest.raises(ResourceNotFound):
            await services.event_processor.process("evt_missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_marker_written_with_handler_effects(self, services: Services) -> None:
        event = await store_event(services, "payout.paid", {"payout_id": "po_1"})
        processor = processor_with(services, "payout.paid", write_transaction)

        assert await processor.process(event.id) == "success"

        assert await count(services, ProcessedEvent) == 1
        assert await count(services, Transaction) == 1
