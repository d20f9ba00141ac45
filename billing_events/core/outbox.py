"""
Transactional outbox for outbound webhook events.

``EventEmitter.emit`` writes the internal event and one pending delivery per
subscribed endpoint in the caller's transaction. If the business change
rolls back, nothing is sent; if it commits, the delivery worker picks the
rows up.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_events.database.models import (
    DeliveryStatus,
    Event,
    EventSource,
    WebhookDelivery,
    WebhookEndpoint,
    generate_id,
    unix_timestamp,
    utc_now,
)

logger = structlog.get_logger(__name__)


class EventEmitter:
    """Stores internal events and fans them out to subscriber endpoints."""

    async def _subscribed_endpoints(
        self, db: AsyncSession, event_type: str
    ) -> List[WebhookEndpoint]:
        result = await db.execute(
            select(WebhookEndpoint).where(WebhookEndpoint.enabled.is_(True))
        )
        return [endpoint for endpoint in result.scalars() if endpoint.subscribes_to(event_type)]

    async def emit(
        self,
        db: AsyncSession,
        event_type: str,
        data: Dict[str, Any],
        previous_attributes: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """
        Record an internal event and schedule its deliveries.

        Args:
            db: Session of the transaction making the business change
            event_type: Dotted event type, e.g. ``subscription.canceled``
            data: Event payload
            previous_attributes: Changed fields before the update, if any

        Returns:
            Event: The stored event
        """
        now = utc_now()
        event = Event(
            id=generate_id("evt"),
            type=event_type,
            source=EventSource.INTERNAL.value,
            timestamp=unix_timestamp(now),
            payload=data,
            previous_attributes=previous_attributes,
            created_at=now,
        )
        db.add(event)

        endpoints = await self._subscribed_endpoints(db, event_type)
        for endpoint in endpoints:
            db.add(
                WebhookDelivery(
                    endpoint_id=endpoint.id,
                    event_id=event.id,
                    attempt=0,
                    status=DeliveryStatus.PENDING.value,
                    next_attempt_at=now,
                )
            )
        await db.flush()

        logger.info(
            "outbound_event_emitted",
            event_id=event.id,
            event_type=event_type,
            deliveries=len(endpoints),
        )
        return event
