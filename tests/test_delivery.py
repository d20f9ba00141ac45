"""
Tests for the outbound event outbox and webhook delivery retries.
"""
import json
from datetime import timedelta
from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy import func, select

from billing_events.core.delivery import BACKOFF_SECONDS, MAX_ATTEMPTS, DeliveryManager
from billing_events.core.signatures import SignatureVerifier
from billing_events.database.models import (
    DeliveryStatus,
    Event,
    WebhookDelivery,
    WebhookEndpoint,
    utc_now,
)
from billing_events.services import Services
from tests.conftest import RecordingReceiver

PAYLOAD = {"id": "po_1", "status": "pending"}


async def emit(services: Services, event_type: str = "payout.created") -> Event:
    async with services.database.session_factory() as db:
        event = await services.emitter.emit(db, event_type, PAYLOAD)
        await db.commit()
    return event


async def deliveries(services: Services) -> List[WebhookDelivery]:
    async with services.database.session_factory() as db:
        result = await db.execute(select(WebhookDelivery))
        return list(result.scalars().all())


class TestOutbox:
    """Test suite for EventEmitter fan-out."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_delivery_per_subscribed_endpoint(self, services: Services) -> None:
        wildcard = await services.endpoints.register("https://a.example.com/hook", ["*"])
        exact = await services.endpoints.register(
            "https://b.example.com/hook", ["payout.created"]
        )
        await services.endpoints.register("https://c.example.com/hook", ["order.paid"])
        await services.endpoints.register(
            "https://d.example.com/hook", ["*"], enabled=False
        )

        event = await emit(services)

        rows = await deliveries(services)
        assert {row.endpoint_id for row in rows} == {wildcard.id, exact.id}
        assert all(row.event_id == event.id for row in rows)
        assert all(row.status == DeliveryStatus.PENDING.value for row in rows)
        assert all(row.attempt == 0 for row in rows)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rollback_discards_event_and_deliveries(self, services: Services) -> None:
        await services.endpoints.register("https://a.example.com/hook", ["*"])

        async with services.database.session_factory() as db:
            await services.emitter.emit(db, "payout.created", PAYLOAD)
            await db.rollback()

        async with services.database.session_factory() as db:
            assert (await db.execute(select(func.count()).select_from(Event))).scalar_one() == 0
        assert await deliveries(services) == []


class TestDelivery:
    """Test suite for DeliveryManager."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed(
        self, services: Services, receiver: RecordingReceiver
    ) -> None:
        endpoint = await services.endpoints.register(
            "https://a.example.com/hook", ["*"], secret="whsec_subscriber_secret"
        )
        event = await emit(services)

        counts = await services.delivery.process_due()

        assert counts == {"succeeded": 1}
        assert len(receiver.requests) == 1
        request = receiver.requests[0]
        (delivery,) = await deliveries(services)

        assert request.headers["X-Webhook-ID"] == event.id
        assert SignatureVerifier().verify(
            request.content,
            request.headers["X-Webhook-Signature"],
            request.headers["X-Webhook-Timestamp"],
            "whsec_subscriber_secret",
        )
        body: Dict[str, Any] = json.loads(request.content)
        assert body["id"] == event.id
        assert body["type"] == "payout.created"
        assert body["data"] == PAYLOAD
        assert body["metadata"] == {"webhook_id": endpoint.id, "delivery_attempt": 1}

        assert delivery.status == DeliveryStatus.SUCCEEDED.value
        assert delivery.attempt == 1
        assert delivery.last_status == 200
        assert delivery.next_attempt_at is None
        stored_endpoint = await services.endpoints.get(endpoint.id)
        assert stored_endpoint.last_triggered_at is not None

        # Settled deliveries are never sent again.
        assert await services.delivery.process_due(now=utc_now() + timedelta(days=2)) == {}
        assert len(receiver.requests) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delivery_is_accepted_by_inbound_webhook(
        self, services: Services, receiver: RecordingReceiver, client: httpx.AsyncClient
    ) -> None:
        await services.endpoints.register(
            "https://a.example.com/hook", ["*"], secret=services.settings.webhook_secret
        )
        event = await emit(services)
        await services.delivery.process_due()
        request = receiver.requests[0]

        response = await client.post(
            "/webhooks/inbound",
            content=request.content,
            headers={
                name: request.headers[name]
                for name in ("X-Webhook-ID", "X-Webhook-Timestamp", "X-Webhook-Signature")
            },
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_id": event.id}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retries_follow_backoff_then_exhaust(
        self, services: Services, receiver: RecordingReceiver
    ) -> None:
        receiver.status_code = 500
        await services.endpoints.register("https://a.example.com/hook", ["*"])
        await emit(services)
        (delivery,) = await deliveries(services)

        now = utc_now()
        for attempt in range(1, MAX_ATTEMPTS + 1):
            assert await services.delivery.due_delivery_ids(now) == [delivery.id]
            result = await services.delivery.deliver(delivery.id, now=now)

            async with services.database.session_factory() as db:
                stored = await db.get(WebhookDelivery, delivery.id)

            assert stored.attempt == attempt
            assert stored.last_status == 500
            if attempt < MAX_ATTEMPTS:
                assert result == "retry_scheduled"
                expected_delay = timedelta(seconds=BACKOFF_SECONDS[attempt + 1])
                assert stored.next_attempt_at == now + expected_delay
                # Not due a moment before the scheduled time.
                before = stored.next_attempt_at - timedelta(seconds=1)
                assert await services.delivery.due_delivery_ids(before) == []
                now = stored.next_attempt_at
            else:
                assert result == "exhausted"
                assert stored.status == DeliveryStatus.FAILED.value
                assert stored.next_attempt_at is None

        assert len(receiver.requests) == MAX_ATTEMPTS

        # No eighth attempt.
        assert await services.delivery.deliver(delivery.id) == DeliveryStatus.FAILED.value
        assert await services.delivery.process_due(now=now + timedelta(days=30)) == {}
        assert len(receiver.requests) == MAX_ATTEMPTS

        failed = await services.endpoints.list_deliveries(status=DeliveryStatus.FAILED.value)
        assert [row.id for row in failed] == [delivery.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_error_schedules_retry(self, services: Services) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        manager = DeliveryManager(
            services.database.session_factory, services.settings, http_client=http_client
        )
        await services.endpoints.register("https://a.example.com/hook", ["*"])
        await emit(services)
        (delivery,) = await deliveries(services)

        try:
            assert await manager.deliver(delivery.id) == "retry_scheduled"
        finally:
            await manager.close()

        (stored,) = await deliveries(services)
        assert stored.last_status is None
        assert stored.last_error.startswith("ConnectError")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deleted_endpoint_fails_attempt(
        self, services: Services, receiver: RecordingReceiver
    ) -> None:
        endpoint = await services.endpoints.register("https://a.example.com/hook", ["*"])
        await emit(services)
        await services.endpoints.delete(endpoint.id)

        counts = await services.delivery.process_due()

        assert counts == {"retry_scheduled": 1}
        assert receiver.requests == []
        (stored,) = await deliveries(services)
        assert stored.last_error == "endpoint unavailable"


@pytest.mark.unit
def test_backoff_schedule() -> None:
    assert MAX_ATTEMPTS == 7
    assert [BACKOFF_SECONDS[n] for n in range(1, 8)] == [0, 60, 300, 1800, 7200, 28800, 86400]
    assert WebhookEndpoint(event_types=["*"], enabled=True).subscribes_to("anything")
