"""
Event store and idempotent event processing.

Inbound events are stored first and processed second. Processing inserts
the processed-event marker and runs the handler in one transaction, so a
marker exists if and only if the handler's effects were committed.
"""
import time
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.core.errors import BillingError, DuplicateEvent, ResourceNotFound
from billing_events.core.router import EventRouter
from billing_events.database.models import Event, EventSource, ProcessedEvent, utc_now
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class EventStore:
    """Append-only storage for events plus the processed-event markers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, event: Event) -> bool:
        """
        Durably store an event.

        Returns:
            bool: False if an event with the same id is already stored
        """
        async with self.session_factory() as db:
            db.add(event)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("event_already_stored", event_id=event.id, event_type=event.type)
                return False

        logger.info("event_stored", event_id=event.id, event_type=event.type)
        return True

    async def record_if_new(self, db: AsyncSession, event_id: str) -> bool:
        """
        Insert the processed marker inside the caller's transaction.

        Must be the first write of the transaction: on a conflict the
        transaction is rolled back and False is returned.
        """
        db.add(ProcessedEvent(event_id=event_id, processed_at=utc_now()))
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    async def is_processed(self, event_id: str) -> bool:
        async with self.session_factory() as db:
            return await db.get(ProcessedEvent, event_id) is not None

    async def get(self, event_id: str) -> Event:
        async with self.session_factory() as db:
            event = await db.get(Event, event_id)
        if event is None:
            raise ResourceNotFound("Event", event_id)
        return event

    async def list(
        self,
        event_type: Optional[str] = None,
        source: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: int = 100,
    ) -> List[Event]:
        """
        Query events, newest first.

        Args:
            event_type: Exact type, or a prefix ending in ``.*``
            source: ``processor`` or ``internal``
            since: Unix timestamp lower bound (inclusive)
            until: Unix timestamp upper bound (inclusive)
            limit: Maximum rows returned
        """
        stmt = select(Event)
        if event_type:
            if event_type.endswith(".*"):
                stmt = stmt.where(Event.type.startswith(event_type[:-1]))
            else:
                stmt = stmt.where(Event.type == event_type)
        if source:
            stmt = stmt.where(Event.source == source)
        if since is not None:
            stmt = stmt.where(Event.timestamp >= since)
        if until is not None:
            stmt = stmt.where(Event.timestamp <= until)
        stmt = stmt.order_by(Event.timestamp.desc(), Event.created_at.desc()).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_unprocessed(self, older_than: datetime, limit: int = 100) -> List[Event]:
        """Inbound events stored before ``older_than`` that have no processed marker."""
        stmt = (
            select(Event)
            .outerjoin(ProcessedEvent, ProcessedEvent.event_id == Event.id)
            .where(
                Event.source == EventSource.PROCESSOR.value,
                Event.created_at <= older_than,
                ProcessedEvent.event_id.is_(None),
            )
            .order_by(Event.created_at)
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())


class EventProcessor:
    """
    Runs stored inbound events through the router exactly once.

    Retryable failures are left for the replayer until the event has been
    stored for longer than ``max_age``; after that the event is abandoned
    and marked like a rejected one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: EventStore,
        router: EventRouter,
        max_age: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.router = router
        self.max_age = max_age

    def _expired(self, stored_at: datetime) -> bool:
        return self.max_age is not None and utc_now() - stored_at > self.max_age

    async def _mark_rejected(self, event_id: str) -> str:
        async with self.session_factory() as db:
            if not await self.store.record_if_new(db, event_id):
                return "duplicate"
            await db.commit()
        return "rejected"

    async def process(self, event_id: str) -> str:
        """
        Process one stored event.

        Returns:
            str: ``success``, ``no_handler``, ``duplicate`` or ``rejected``

        Raises:
            ResourceNotFound: If the event was never stored
            Exception: Any retryable handler failure on an event younger than
                ``max_age``; nothing was committed
        """
        started = time.monotonic()

        async with self.session_factory() as db:
            event = await db.get(Event, event_id)
            if event is None:
                raise ResourceNotFound("Event", event_id)
            # Rollback expires ORM state; keep plain copies for logging.
            event_type = event.type
            stored_at = event.created_at
            log = logger.bind(event_id=event_id, event_type=event_type)

            try:
                if not await self.store.record_if_new(db, event_id):
                    raise DuplicateEvent(event_id)
                status = await self.router.dispatch(db, event)
                await db.commit()
            except DuplicateEvent:
                log.info("webhook_event_duplicate")
                metrics.record_webhook_event(event_type, "duplicate", time.monotonic() - started)
                return "duplicate"
            except BillingError as e:
                await db.rollback()
                if e.retryable and not self._expired(stored_at):
                    log.warning("webhook_event_failed", **e.to_log())
                    metrics.record_webhook_event(event_type, "failed", time.monotonic() - started)
                    raise
                # Record the event so it is not replayed again.
                if e.retryable:
                    log.error(
                        "webhook_event_abandoned", stored_at=stored_at.isoformat(), **e.to_log()
                    )
                else:
                    log.warning("webhook_event_rejected", **e.to_log())
                status = await self._mark_rejected(event_id)
                metrics.record_webhook_event(event_type, status, time.monotonic() - started)
                return status
            except Exception:
                await db.rollback()
                if not self._expired(stored_at):
                    log.exception("webhook_event_failed")
                    metrics.record_webhook_event(event_type, "failed", time.monotonic() - started)
                    raise
                log.exception("webhook_event_abandoned", stored_at=stored_at.isoformat())
                status = await self._mark_rejected(event_id)
                metrics.record_webhook_event(event_type, status, time.monotonic() - started)
                return status

        log.info("webhook_event_processed", status=status)
        metrics.record_webhook_event(event_type, status, time.monotonic() - started)
        return status

    async def process_safely(self, event_id: str) -> Optional[str]:
        """
        Process an event from a background task.

        Failures are logged and left for the replayer; they never propagate
        to the caller.
        """
        try:
            return await self.process(event_id)
        except Exception:
            logger.warning("webhook_event_left_for_replay", event_id=event_id)
            return None
