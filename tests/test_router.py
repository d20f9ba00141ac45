"""
Unit tests for event type routing.
"""
from typing import Any, List
from unittest.mock import MagicMock

import pytest

from billing_events.core.router import EventRouter
from billing_events.database.models import Event


def recording_handler(calls: List[str], name: str) -> Any:
    async def handler(db: Any, event: Event) -> None:
        calls.append(name)

    return handler


def make_event(event_type: str) -> Event:
    return Event(id="evt_router", type=event_type, timestamp=0, payload={})


class TestEventRouter:
    """Test suite for EventRouter."""

    @pytest.mark.unit
    def test_exact_match_wins(self) -> None:
        router = EventRouter()
        exact = recording_handler([], "exact")
        prefix = recording_handler([], "prefix")
        router.register("invoice.payment_failed", exact)
        router.register("invoice.*", prefix)

        assert router.resolve("invoice.payment_failed") is exact
        assert router.resolve("invoice.payment_succeeded") is prefix

    @pytest.mark.unit
    def test_most_specific_prefix_wins(self) -> None:
        router = EventRouter()
        broad = recording_handler([], "broad")
        narrow = recording_handler([], "narrow")
        router.register("invoice.*", broad)
        router.register("invoice.payment.*", narrow)

        assert router.resolve("invoice.payment.failed") is narrow
        assert router.resolve("invoice.finalized") is broad

    @pytest.mark.unit
    def test_catch_all(self) -> None:
        router = EventRouter()
        fallback = recording_handler([], "fallback")
        router.register("*", fallback)

        assert router.resolve("anything.at.all") is fallback

    @pytest.mark.unit
    def test_unknown_type_resolves_to_none(self) -> None:
        router = EventRouter()
        router.register("payout.paid", recording_handler([], "paid"))

        assert router.resolve("payout.failed") is None

    @pytest.mark.unit
    def test_event_types_listed(self) -> None:
        router = EventRouter()
        router.register("b.x", recording_handler([], "b"))
        router.register("a.x", recording_handler([], "a"))

        assert router.event_types == ["a.x", "b.x"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch(self) -> None:
        calls: List[str] = []
        router = EventRouter()
        router.register("order.*", recording_handler(calls, "orders"))

        assert await router.dispatch(MagicMock(), make_event("order.refunded")) == "success"
        assert await router.dispatch(MagicMock(), make_event("payout.paid")) == "no_handler"
        assert calls == ["orders"]
