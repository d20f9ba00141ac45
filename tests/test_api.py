"""
Integration tests for the HTTP API.
"""
import json
import time
from datetime import timedelta
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from billing_events.database.models import utc_now
from billing_events.services import Services
from tests.factories import (
    WEBHOOK_SECRET,
    create_account,
    create_order,
    create_subscription,
    credit,
    signed_headers,
)


def event_body(
    event_type: str, data: Dict[str, Any], event_id: str = "evt_api_1"
) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "timestamp": int(time.time()), "data": data}
    ).encode()


async def post_webhook(
    client: httpx.AsyncClient,
    body: bytes,
    event_id: Optional[str] = None,
    **kwargs: Any,
) -> httpx.Response:
    return await client.post(
        "/webhooks/inbound", content=body, headers=signed_headers(body, event_id, **kwargs)
    )


class TestInboundWebhook:
    """POST /webhooks/inbound"""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_creates_subscription(self, client: httpx.AsyncClient) -> None:
        body = event_body(
            "subscription.created",
            {
                "id": "sub_api",
                "customer_id": "cus_1",
                "product_id": "prod_1",
                "account_id": "acct_1",
                "price": {"amount_type": "fixed", "price_amount": 2000},
                "recurring_interval": "month",
            },
        )

        response = await post_webhook(client, body, event_id="evt_api_1")

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_id": "evt_api_1"}

        subscription = await client.get("/subscriptions/sub_api")
        assert subscription.status_code == 200
        assert subscription.json()["status"] == "incomplete"

        event = await client.get("/events/evt_api_1")
        assert event.json()["source"] == "processor"
        assert event.json()["data"]["id"] == "sub_api"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_webhook_processed_once(
        self, client: httpx.AsyncClient, services: Services
    ) -> None:
        await create_subscription(services, status="incomplete")
        order = await create_order(services)
        body = event_body("invoice.payment_succeeded", {"order_id": order.id})

        first = await post_webhook(client, body)
        second = await post_webhook(client, body)

        assert first.status_code == second.status_code == 200
        balance = await client.get("/accounts/acct_1/balance")
        assert balance.json() == {"account_id": "acct_1", "balance": 2000}

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "secret, skew",
        [
            ("whsec_someone_else", 0),
            (WEBHOOK_SECRET, -400),
            (WEBHOOK_SECRET, 400),
        ],
    )
    async def test_verification_failures_rejected(
        self, client: httpx.AsyncClient, services: Services, secret: str, skew: int
    ) -> None:
        body = event_body("order.paid", {"order_id": "ord_1"})

        response = await post_webhook(
            client, body, timestamp=int(time.time()) + skew, secret=secret
        )

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid webhook"}
        assert await services.store.list(limit=10) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, client: httpx.AsyncClient) -> None:
        body = event_body("order.paid", {"order_id": "ord_1"})
        headers = signed_headers(body)

        response = await client.post(
            "/webhooks/inbound", content=body.replace(b"ord_1", b"ord_2"), headers=headers
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_headers_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/inbound", content=event_body("order.paid", {"order_id": "ord_1"})
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b'{"id": "evt_1", "type": "order.paid"}',
            b'{"id": "", "type": "order.paid", "timestamp": 1, "data": {}}',
        ],
    )
    async def test_invalid_body_rejected(self, client: httpx.AsyncClient, body: bytes) -> None:
        response = await post_webhook(client, body)

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mismatched_event_id_header_rejected(self, client: httpx.AsyncClient) -> None:
        body = event_body("order.paid", {"order_id": "ord_1"}, event_id="evt_api_1")

        response = await post_webhook(client, body, event_id="evt_other")

        assert response.status_code == 400


class TestEndpointApi:
    """Subscriber endpoint management."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_endpoint_crud(self, client: httpx.AsyncClient) -> None:
        created = await client.post(
            "/webhooks/endpoints",
            json={"url": "https://hooks.example.com/billing", "event_types": ["payout.*"]},
        )
        assert created.status_code == 201
        endpoint = created.json()
        assert endpoint["secret"]
        assert endpoint["enabled"] is True
        endpoint_id = endpoint["id"]

        listed = await client.get("/webhooks/endpoints")
        assert [row["id"] for row in listed.json()] == [endpoint_id]
        assert "secret" not in listed.json()[0]

        updated = await client.patch(
            f"/webhooks/endpoints/{endpoint_id}",
            json={"enabled": False, "event_types": ["*"]},
        )
        assert updated.status_code == 200
        assert updated.json()["enabled"] is False
        assert updated.json()["event_types"] == ["*"]
        assert updated.json()["url"] == "https://hooks.example.com/billing"

        deleted = await client.delete(f"/webhooks/endpoints/{endpoint_id}")
        assert deleted.status_code == 204

        missing = await client.get(f"/webhooks/endpoints/{endpoint_id}")
        assert missing.status_code == 404
        assert missing.json()["code"] == "resource_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_endpoint_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/endpoints", json={"url": "not-a-url", "event_types": []}
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_deliveries_listed_by_status(
        self, client: httpx.AsyncClient, services: Services
    ) -> None:
        await services.endpoints.register("https://a.example.com/hook", ["*"])
        async with services.database.session_factory() as db:
            await services.emitter.emit(db, "order.paid", {"id": "ord_1"})
            await db.commit()

        pending = await client.get("/webhooks/deliveries", params={"status": "pending"})
        failed = await client.get("/webhooks/deliveries", params={"status": "failed"})

        assert len(pending.json()) == 1
        assert pending.json()[0]["attempt"] == 0
        assert failed.json() == []


class TestEventApi:
    """GET /events"""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_filters_by_type(
        self, client: httpx.AsyncClient, services: Services
    ) -> None:
        async with services.database.session_factory() as db:
            await services.emitter.emit(db, "payout.created", {"id": "po_1"})
            await services.emitter.emit(db, "payout.paid", {"id": "po_1"})
            await services.emitter.emit(db, "order.paid", {"id": "ord_1"})
            await db.commit()

        response = await client.get("/events", params={"type": "payout.*"})

        assert response.status_code == 200
        assert sorted(event["type"] for event in response.json()) == [
            "payout.created",
            "payout.paid",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_event(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/events/evt_missing")

        assert response.status_code == 404


class TestSubscriptionApi:
    """Subscription operations."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_then_cancel_again(
        self, client: httpx.AsyncClient, services: Services
    ) -> None:
        await create_subscription(services, status="active")

        first = await client.post("/subscriptions/sub_1/cancel")
        second = await client.post("/subscriptions/sub_1/cancel")

        assert first.status_code == 200
        assert first.json()["status"] == "canceled"
        assert second.status_code == 409
        assert second.json()["code"] == "invalid_state_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_at_period_end_and_withdraw(
        self, client: httpx.AsyncClient, services: Services
    ) -> None:
        await create_subscription(services, status="active")

        scheduled = await client.post("/subscriptions/sub_1/cancel-at-period-end", json={})
        withdrawn = await client.post(
            "/subscriptions/sub_1/cancel-at-period-end", json={"cancel": False}
        )

        assert scheduled.json()["cancel_at_period_end"] is True
        assert scheduled.json()["status"] == "active"
        assert withdrawn.json()["cancel_at_period_end"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_record_usage(self, client: httpx.AsyncClient, services: Services) -> None:
        await create_subscription(
            services, price={"amount_type": "metered_unit", "unit_amount": 150}
        )

        response = await client.post("/subscriptions/sub_1/usage", json={"quantity": 3})
        invalid = await client.post("/subscriptions/sub_1/usage", json={"quantity": 0})

        assert response.json()["metered_units"] == 3
        assert invalid.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_subscription(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/subscriptions/sub_missing")

        assert response.status_code == 404


class TestPayoutApi:
    """Balance and payout operations."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payout_and_transfer(
        self, client: httpx.AsyncClient, services: Services, processor: AsyncMock
    ) -> None:
        await create_account(services)
        await credit(services, "acct_1", 10_000)

        response = await client.post("/accounts/acct_1/payouts", json={})

        assert response.status_code == 201
        payout = response.json()
        assert (payout["amount"], payout["fees_amount"], payout["account_amount"]) == (
            10_000,
            50,
            9950,
        )
        processor.create_transfer.assert_awaited_once()

        fetched = await client.get(f"/payouts/{payout['id']}")
        assert fetched.json()["transfer_id"] == "tr_test_123"
        balance = await client.get("/accounts/acct_1/balance")
        assert balance.json()["balance"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_balance(
        self, client: httpx.AsyncClient, services: Services
    ) -> None:
        await create_account(services)
        await credit(services, "acct_1", 5000)

        response = await client.post("/accounts/acct_1/payouts", json={"amount": 9000})

        assert response.status_code == 422
        assert response.json()["code"] == "insufficient_balance"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payout(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/payouts/po_missing")

        assert response.status_code == 404


class TestAdminAndMonitoring:
    """Admin triggers, health probes and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scheduler_run(self, client: httpx.AsyncClient, services: Services) -> None:
        await create_subscription(
            services, period_start=utc_now() - timedelta(days=2), period_days=1
        )

        response = await client.post("/admin/scheduler/run")

        assert response.status_code == 200
        assert response.json()["renewed"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciliation(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/admin/reconciliation")

        assert response.status_code == 200
        assert response.json()["balanced"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_probes(self, client: httpx.AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.json()["status"] == "alive"
        assert ready.status_code == 200
        assert ready.json()["checks"]["database"]["status"] == "healthy"
        assert ready.json()["checks"]["redis"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        await client.get("/health/live")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "webhook_events_received_total" in response.text
