"""
Default handlers for inbound processor events.

Each handler runs inside the event's processing transaction, touches only
the records the event concerns, and never commits.

Processors do not guarantee delivery order. A handler that cannot find a
record an earlier event should have created raises a retryable error, so
the event is replayed once that record exists.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_events.config.settings import Settings
from billing_events.core import state_machine
from billing_events.core.errors import (
    BillingError,
    InvalidStateTransition,
    ReferenceNotYetAvailable,
    ResourceNotFound,
)
from billing_events.core.ledger import Ledger
from billing_events.core.outbox import EventEmitter
from billing_events.core.payouts import PayoutService
from billing_events.core.pricing import order_amount, parse_price
from billing_events.core.router import EventRouter
from billing_events.core.subscriptions import (
    RECURRING_INTERVALS,
    advance_period,
    benefits_revoked_payload,
    escalate_to_unpaid,
    load_for_update,
    subscription_payload,
)
from billing_events.database.models import (
    BillingOrder,
    BillingReason,
    Event,
    OrderStatus,
    Payout,
    PayoutStatus,
    Subscription,
    SubscriptionStatus,
    utc_now,
)

logger = structlog.get_logger(__name__)

S = SubscriptionStatus


def _as_int(data: Dict[str, Any], key: str, event: Event) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise BillingError(
            f"Event {event.id} has a non-integer '{key}'", event_id=event.id, event_type=event.type
        ) from e


def _from_unix(data: Dict[str, Any], key: str, event: Event) -> Optional[datetime]:
    value = _as_int(data, key, event)
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError) as e:
        raise BillingError(
            f"Event {event.id} has an invalid '{key}'", event_id=event.id, event_type=event.type
        ) from e


def _require(data: Dict[str, Any], key: str, event: Event) -> Any:
    value = data.get(key)
    if value is None:
        raise BillingError(
            f"Event {event.id} is missing '{key}'", event_id=event.id, event_type=event.type
        )
    return value


async def _load_subscription(db: AsyncSession, subscription_id: str) -> Subscription:
    try:
        return await load_for_update(db, subscription_id)
    except ResourceNotFound as e:
        raise ReferenceNotYetAvailable("Subscription", subscription_id) from e


def order_payload(order: BillingOrder) -> Dict[str, Any]:
    return {
        "id": order.id,
        "subscription_id": order.subscription_id,
        "customer_id": order.customer_id,
        "amount": order.amount,
        "currency": order.currency,
        "billing_reason": order.billing_reason,
        "status": order.status,
    }


async def create_order(
    db: AsyncSession,
    subscription: Subscription,
    billing_reason: BillingReason,
    amount: int,
) -> BillingOrder:
    """Add an order for the subscription's current period. Free orders are paid on creation."""
    order = BillingOrder(
        subscription_id=subscription.id,
        customer_id=subscription.customer_id,
        account_id=subscription.account_id,
        amount=amount,
        currency=subscription.currency,
        billing_reason=billing_reason.value,
        status=OrderStatus.PAID.value if amount == 0 else OrderStatus.PENDING.value,
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
    )
    db.add(order)
    await db.flush()
    return order


class BillingEventHandlers:
    """Handlers for subscription, invoice, order and payout events."""

    def __init__(
        self,
        ledger: Ledger,
        emitter: EventEmitter,
        payouts: PayoutService,
        settings: Settings,
    ):
        self.ledger = ledger
        self.emitter = emitter
        self.payouts = payouts
        self.settings = settings

    def register(self, router: EventRouter) -> EventRouter:
        router.register("subscription.created", self.subscription_created)
        router.register("subscription.updated", self.subscription_updated)
        router.register("subscription.canceled", self.subscription_canceled)
        router.register("subscription.revoked", self.subscription_revoked)
        router.register("invoice.payment_succeeded", self.invoice_payment_succeeded)
        router.register("invoice.payment_failed", self.invoice_payment_failed)
        router.register("order.refunded", self.order_refunded)
        router.register("payout.paid", self.payout_paid)
        router.register("payout.failed", self.payout_failed)
        router.register("transfer.reversed", self.transfer_reversed)
        return router

    async def _find_order(
        self, db: AsyncSession, event: Event, data: Dict[str, Any]
    ) -> BillingOrder:
        order_id = data.get("order_id")
        if order_id:
            order = await db.get(BillingOrder, order_id)
            if order is None:
                raise ReferenceNotYetAvailable("Order", order_id)
            return order

        subscription_id = _require(data, "subscription_id", event)
        result = await db.execute(
            select(BillingOrder)
            .where(
                BillingOrder.subscription_id == subscription_id,
                BillingOrder.status.in_([OrderStatus.PENDING.value, OrderStatus.FAILED.value]),
            )
            .order_by(BillingOrder.created_at.desc())
            .limit(1)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise ReferenceNotYetAvailable("Order", f"open order of {subscription_id}")
        return order

    async def _emit_status_change(
        self, db: AsyncSession, subscription: Subscription, previous_status: str
    ) -> None:
        if subscription.status == previous_status:
            return
        await self.emitter.emit(
            db,
            "subscription.updated",
            subscription_payload(subscription),
            previous_attributes={"status": previous_status},
        )
        if subscription.status in (S.CANCELED.value, S.REVOKED.value):
            await self.emitter.emit(
                db, "customer.benefits_revoked", benefits_revoked_payload(subscription)
            )

    def _start_dunning(self, subscription: Subscription, now: datetime) -> None:
        state_machine.transition(subscription, S.PAST_DUE, now)
        subscription.next_payment_retry_at = now + timedelta(
            days=self.settings.dunning_retry_days[0]
        )
        logger.info(
            "subscription_dunning_started",
            subscription_id=subscription.id,
            next_payment_retry_at=subscription.next_payment_retry_at.isoformat(),
        )

    async def subscription_created(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        subscription_id = _require(data, "id", event)

        if await db.get(Subscription, subscription_id) is not None:
            logger.info("subscription_already_exists", subscription_id=subscription_id)
            return

        try:
            price = parse_price(_require(data, "price", event))
        except ValidationError as e:
            raise BillingError(f"Event {event.id} has an invalid price", event_id=event.id) from e
        now = utc_now()
        interval = data.get("recurring_interval", "month")
        if interval not in RECURRING_INTERVALS:
            raise BillingError(f"Unknown recurring interval '{interval}'", event_id=event.id)
        interval_count = _as_int(data, "recurring_interval_count", event)
        if interval_count is None:
            interval_count = 1
        elif interval_count < 1:
            raise BillingError(
                f"Event {event.id} has a non-positive interval count", event_id=event.id
            )
        period_start = _from_unix(data, "current_period_start", event) or now
        trial_end = _from_unix(data, "trial_end", event)

        subscription = Subscription(
            id=subscription_id,
            customer_id=_require(data, "customer_id", event),
            product_id=_require(data, "product_id", event),
            account_id=_require(data, "account_id", event),
            price=price.model_dump(),
            recurring_interval=interval,
            recurring_interval_count=interval_count,
            currency=data.get("currency", "usd"),
            current_period_start=period_start,
            cancel_at_period_end=False,
            metered_units=0,
            payment_retry_count=0,
        )
        if trial_end is not None and trial_end > period_start:
            subscription.status = S.TRIALING.value
            subscription.trial_start = period_start
            subscription.trial_end = trial_end
            subscription.current_period_end = trial_end
        else:
            subscription.status = S.INCOMPLETE.value
            subscription.current_period_end = advance_period(
                period_start, interval, interval_count
            )
        db.add(subscription)
        await db.flush()

        if subscription.status == S.INCOMPLETE.value:
            order = await create_order(
                db, subscription, BillingReason.SUBSCRIPTION_CREATE, order_amount(price)
            )
            await self.emitter.emit(db, "order.created", order_payload(order))
            if order.status == OrderStatus.PAID.value:
                state_machine.transition(subscription, S.ACTIVE, now)

        await self.emitter.emit(db, "subscription.created", subscription_payload(subscription))
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            status=subscription.status,
        )

    async def subscription_updated(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        subscription = await _load_subscription(db, _require(data, "id", event))
        previous_status = subscription.status
        now = utc_now()

        target = data.get("status")
        if target and target not in {status.value for status in S}:
            raise BillingError(f"Unknown subscription status '{target}'", event_id=event.id)
        if target == S.PAST_DUE.value and subscription.status != target:
            self._start_dunning(subscription, now)
        elif target and target != subscription.status:
            state_machine.transition(subscription, target, now)

        if "cancel_at_period_end" in data:
            cancel = bool(data["cancel_at_period_end"])
            if cancel and S(subscription.status) not in state_machine.LIVE_STATES:
                raise InvalidStateTransition(
                    subscription.id,
                    subscription.status,
                    S.CANCELED.value,
                    reason="only live subscriptions can be canceled at period end",
                )
            subscription.cancel_at_period_end = cancel

        await self._emit_status_change(db, subscription, previous_status)

    async def subscription_canceled(self, db: AsyncSession, event: Event) -> None:
        subscription = await _load_subscription(db, _require(event.payload, "id", event))
        if subscription.status == S.CANCELED.value:
            return
        previous_status = subscription.status
        state_machine.transition(subscription, S.CANCELED, utc_now())
        await self.emitter.emit(
            db,
            "subscription.canceled",
            subscription_payload(subscription),
            previous_attributes={"status": previous_status},
        )
        await self.emitter.emit(
            db, "customer.benefits_revoked", benefits_revoked_payload(subscription)
        )

    async def subscription_revoked(self, db: AsyncSession, event: Event) -> None:
        subscription = await _load_subscription(db, _require(event.payload, "id", event))
        if subscription.status == S.REVOKED.value:
            return
        previous_status = subscription.status
        state_machine.transition(subscription, S.REVOKED, utc_now())
        await self._emit_status_change(db, subscription, previous_status)

    async def invoice_payment_succeeded(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        order = await self._find_order(db, event, data)
        if order.status == OrderStatus.PAID.value:
            logger.info("order_already_paid", order_id=order.id)
            return

        order.status = OrderStatus.PAID.value
        await self.ledger.record_payment(db, order)
        await self.emitter.emit(db, "order.paid", order_payload(order))

        subscription = await _load_subscription(db, order.subscription_id)
        previous_status = subscription.status
        if subscription.status in (
            S.INCOMPLETE.value,
            S.TRIALING.value,
            S.PAST_DUE.value,
            S.UNPAID.value,
        ):
            state_machine.transition(subscription, S.ACTIVE, utc_now())
        await self._emit_status_change(db, subscription, previous_status)

    async def invoice_payment_failed(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        order = await self._find_order(db, event, data)
        if order.status == OrderStatus.PENDING.value:
            order.status = OrderStatus.FAILED.value
            await self.emitter.emit(db, "order.payment_failed", order_payload(order))

        subscription = await _load_subscription(db, order.subscription_id)
        previous_status = subscription.status
        now = utc_now()
        retry_days = self.settings.dunning_retry_days

        if subscription.status == S.ACTIVE.value:
            self._start_dunning(subscription, now)
        elif subscription.status == S.TRIALING.value:
            state_machine.transition(subscription, S.UNPAID, now)
        elif (
            subscription.status == S.PAST_DUE.value
            and subscription.payment_retry_count >= len(retry_days)
        ):
            escalate_to_unpaid(subscription, now)
            logger.info("subscription_dunning_exhausted", subscription_id=subscription.id)

        await self._emit_status_change(db, subscription, previous_status)

    async def order_refunded(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        order_id = _require(data, "order_id", event)
        order = await db.get(BillingOrder, order_id)
        if order is None:
            raise ReferenceNotYetAvailable("Order", order_id)
        if order.status == OrderStatus.REFUNDED.value:
            logger.info("order_already_refunded", order_id=order.id)
            return
        if order.status != OrderStatus.PAID.value:
            raise BillingError(
                f"Order {order.id} is {order.status} and cannot be refunded", order_id=order.id
            )

        order.status = OrderStatus.REFUNDED.value
        await self.ledger.record_refund(db, order, data.get("amount"))
        await self.emitter.emit(db, "order.refunded", order_payload(order))

    async def payout_paid(self, db: AsyncSession, event: Event) -> None:
        await self.payouts.mark_paid(db, _require(event.payload, "payout_id", event))

    async def payout_failed(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        await self.payouts.mark_failed(
            db, _require(data, "payout_id", event), data.get("failure_reason")
        )

    async def transfer_reversed(self, db: AsyncSession, event: Event) -> None:
        data = event.payload
        payout_id = _require(data, "payout_id", event)
        payout = await db.get(Payout, payout_id)
        if payout is None:
            raise ResourceNotFound("Payout", payout_id)

        logger.warning(
            "payout_transfer_reversed",
            payout_id=payout_id,
            transfer_id=payout.transfer_id,
            status=payout.status,
        )
        if payout.status != PayoutStatus.SUCCEEDED.value:
            await self.payouts.mark_failed(
                db, payout_id, "transfer reversed", funds_returned=True
            )


def build_default_router(handlers: BillingEventHandlers) -> EventRouter:
    return handlers.register(EventRouter())
