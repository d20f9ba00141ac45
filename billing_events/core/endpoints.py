"""Registry of subscriber endpoints for outbound webhooks."""
import secrets
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.core.errors import ResourceNotFound
from billing_events.database.models import WebhookDelivery, WebhookEndpoint, utc_now

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = ("url", "event_types", "enabled", "secret")


def generate_secret() -> str:
    return f"whsec_{secrets.token_hex(24)}"


class EndpointRegistry:
    """Create, read, update and delete subscriber endpoints."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def register(
        self,
        url: str,
        event_types: List[str],
        secret: Optional[str] = None,
        enabled: bool = True,
    ) -> WebhookEndpoint:
        endpoint = WebhookEndpoint(
            url=url,
            event_types=list(event_types),
            secret=secret or generate_secret(),
            enabled=enabled,
        )
        async with self.session_factory() as db:
            db.add(endpoint)
            await db.commit()

        logger.info(
            "webhook_endpoint_registered",
            endpoint_id=endpoint.id,
            url=url,
            event_types=event_types,
        )
        return endpoint

    async def get(self, endpoint_id: str) -> WebhookEndpoint:
        async with self.session_factory() as db:
            endpoint = await db.get(WebhookEndpoint, endpoint_id)
        if endpoint is None:
            raise ResourceNotFound("WebhookEndpoint", endpoint_id)
        return endpoint

    async def update(self, endpoint_id: str, changes: Dict[str, Any]) -> WebhookEndpoint:
        async with self.session_factory() as db:
            endpoint = await db.get(WebhookEndpoint, endpoint_id)
            if endpoint is None:
                raise ResourceNotFound("WebhookEndpoint", endpoint_id)
            for field in UPDATABLE_FIELDS:
                if changes.get(field) is not None:
                    setattr(endpoint, field, changes[field])
            endpoint.modified_at = utc_now()
            await db.commit()

        logger.info(
            "webhook_endpoint_updated",
            endpoint_id=endpoint_id,
            fields=sorted(field for field in UPDATABLE_FIELDS if changes.get(field) is not None),
        )
        return endpoint

    async def delete(self, endpoint_id: str) -> None:
        """Remove the endpoint. Its pending deliveries fail on their next attempt."""
        async with self.session_factory() as db:
            endpoint = await db.get(WebhookEndpoint, endpoint_id)
            if endpoint is None:
                raise ResourceNotFound("WebhookEndpoint", endpoint_id)
            await db.delete(endpoint)
            await db.commit()
        logger.info("webhook_endpoint_deleted", endpoint_id=endpoint_id)

    async def list(self, enabled: Optional[bool] = None) -> List[WebhookEndpoint]:
        stmt = select(WebhookEndpoint).order_by(WebhookEndpoint.created_at)
        if enabled is not None:
            stmt = stmt.where(WebhookEndpoint.enabled.is_(enabled))
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_deliveries(
        self,
        status: Optional[str] = None,
        endpoint_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[WebhookDelivery]:
        stmt = select(WebhookDelivery).order_by(WebhookDelivery.created_at.desc()).limit(limit)
        if status:
            stmt = stmt.where(WebhookDelivery.status == status)
        if endpoint_id:
            stmt = stmt.where(WebhookDelivery.endpoint_id == endpoint_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
