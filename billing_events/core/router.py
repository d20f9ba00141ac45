"""Maps event types to handler functions."""
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from billing_events.database.models import Event

logger = structlog.get_logger(__name__)

EventHandler = Callable[[AsyncSession, Event], Awaitable[None]]


class EventRouter:
    """
    Dispatches events by type.

    Lookup order is the exact type, then registered wildcard prefixes from
    most to least specific (``invoice.payment.*`` before ``invoice.*``),
    then ``*``. Handlers run inside the caller's transaction and must not
    commit.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, EventHandler] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            logger.warning("event_handler_replaced", event_type=event_type)
        self._handlers[event_type] = handler

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def resolve(self, event_type: str) -> Optional[EventHandler]:
        handler = self._handlers.get(event_type)
        if handler is not None:
            return handler

        parts = event_type.split(".")
        for size in range(len(parts) - 1, 0, -1):
            handler = self._handlers.get(".".join(parts[:size]) + ".*")
            if handler is not None:
                return handler
        return self._handlers.get("*")

    async def dispatch(self, db: AsyncSession, event: Event) -> str:
        """
        Run the handler registered for ``event``.

        Returns:
            str: ``success``, or ``no_handler`` when nothing is registered
        """
        handler = self.resolve(event.type)
        if handler is None:
            logger.info("webhook_no_handler", event_id=event.id, event_type=event.type)
            return "no_handler"

        await handler(db, event)
        return "success"
