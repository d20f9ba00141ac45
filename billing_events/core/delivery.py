"""
Outbound webhook delivery with retries.

A delivery is attempted at most ``MAX_ATTEMPTS`` times following
``BACKOFF_SECONDS``. Once the last attempt fails the delivery is marked
failed permanently and left for operators to inspect.
"""
import json
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.config.settings import Settings
from billing_events.core.errors import ResourceNotFound
from billing_events.core.signatures import sign
from billing_events.database.models import (
    DeliveryStatus,
    Event,
    WebhookDelivery,
    WebhookEndpoint,
    utc_now,
)
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Delay before attempt N, measured from the previous attempt.
BACKOFF_SECONDS: Dict[int, int] = {
    1: 0,
    2: 60,
    3: 5 * 60,
    4: 30 * 60,
    5: 2 * 60 * 60,
    6: 8 * 60 * 60,
    7: 24 * 60 * 60,
}
MAX_ATTEMPTS = max(BACKOFF_SECONDS)


def build_payload(event: Event, endpoint_id: str, attempt: int) -> Dict[str, Any]:
    body = event.to_dict()
    body["metadata"] = {"webhook_id": endpoint_id, "delivery_attempt": attempt}
    return body


class DeliveryManager:
    """Sends pending deliveries and maintains their retry schedule."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.delivery_timeout_seconds
        )

    async def close(self) -> None:
        await self.http_client.aclose()

    async def _send(
        self, endpoint: WebhookEndpoint, body: Dict[str, Any]
    ) -> tuple[Optional[int], Optional[str]]:
        payload = json.dumps(body, separators=(",", ":"), default=str).encode()
        # The id header carries the event id so receivers can deduplicate on it.
        headers = sign(payload, endpoint.secret, body["id"])
        headers["Content-Type"] = "application/json"
        try:
            response = await self.http_client.post(
                endpoint.url,
                content=payload,
                headers=headers,
                timeout=self.settings.delivery_timeout_seconds,
            )
        except httpx.HTTPError as e:
            return None, f"{type(e).__name__}: {e}"

        if 200 <= response.status_code < 300:
            return response.status_code, None
        return response.status_code, f"HTTP {response.status_code}"

    async def deliver(self, delivery_id: str, now: Optional[datetime] = None) -> str:
        """
        Make the next attempt of one delivery.

        Returns:
            str: ``succeeded``, ``retry_scheduled``, ``exhausted``, or the
            current status when the delivery is already settled
        """
        now = now or utc_now()

        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise ResourceNotFound("WebhookDelivery", delivery_id)
            if delivery.status != DeliveryStatus.PENDING.value:
                return delivery.status
            endpoint = await db.get(WebhookEndpoint, delivery.endpoint_id)
            event = await db.get(Event, delivery.event_id)
            attempt = delivery.attempt + 1

        log = logger.bind(
            delivery_id=delivery_id,
            endpoint_id=delivery.endpoint_id,
            event_id=delivery.event_id,
            attempt=attempt,
        )

        started = time.monotonic()
        if endpoint is None or not endpoint.enabled or event is None:
            status_code, error = None, "endpoint unavailable"
        else:
            status_code, error = await self._send(
                endpoint, build_payload(event, endpoint.id, attempt)
            )
        duration = time.monotonic() - started

        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            delivery.attempt = attempt
            delivery.last_status = status_code
            delivery.last_error = error

            if error is None:
                delivery.status = DeliveryStatus.SUCCEEDED.value
                delivery.next_attempt_at = None
                delivery.completed_at = now
                stored_endpoint = await db.get(WebhookEndpoint, delivery.endpoint_id)
                if stored_endpoint is not None:
                    stored_endpoint.last_triggered_at = now
                result = "succeeded"
            elif attempt >= MAX_ATTEMPTS:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.next_attempt_at = None
                delivery.completed_at = now
                result = "exhausted"
            else:
                delivery.next_attempt_at = now + timedelta(seconds=BACKOFF_SECONDS[attempt + 1])
                result = "retry_scheduled"
            next_attempt_at = delivery.next_attempt_at
            await db.commit()

        metrics.record_delivery_attempt(result, duration)
        if result == "succeeded":
            log.info("webhook_delivery_succeeded", status_code=status_code)
        elif result == "exhausted":
            log.error("webhook_delivery_exhausted", status_code=status_code, error=error)
        else:
            log.warning(
                "webhook_delivery_failed",
                status_code=status_code,
                error=error,
                next_attempt_at=next_attempt_at.isoformat(),
            )
        return result

    async def due_delivery_ids(self, now: datetime) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookDelivery.id)
                .where(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    WebhookDelivery.next_attempt_at <= now,
                )
                .order_by(WebhookDelivery.next_attempt_at)
                .limit(self.settings.delivery_batch_size)
            )
            return list(result.scalars().all())

    async def process_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Attempt every delivery that is due.

        Returns:
            Dict[str, int]: Count per attempt result
        """
        now = now or utc_now()
        counts: Dict[str, int] = {}
        for delivery_id in await self.due_delivery_ids(now):
            try:
                result = await self.deliver(delivery_id, now=now)
            except Exception:
                logger.exception("webhook_delivery_error", delivery_id=delivery_id)
                result = "error"
            counts[result] = counts.get(result, 0) + 1

        if counts:
            logger.info("webhook_deliveries_processed", **counts)
        return counts
