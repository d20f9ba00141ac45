"""
Subscription service.

Operator-facing actions on a single subscription plus the period and
dunning helpers shared by the event handlers and the billing scheduler.
"""
import calendar
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.core import state_machine
from billing_events.core.errors import BillingError, InvalidStateTransition, ResourceNotFound
from billing_events.core.locking import LockManager
from billing_events.core.outbox import EventEmitter
from billing_events.core.pricing import is_metered, parse_price
from billing_events.database.models import Subscription, SubscriptionStatus, utc_now

logger = structlog.get_logger(__name__)

RECURRING_INTERVALS = ("day", "week", "month", "year")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_period(start: datetime, interval: str, count: int = 1) -> datetime:
    """End of a billing period starting at ``start``."""
    if interval == "day":
        return start + timedelta(days=count)
    elif interval == "week":
        return start + timedelta(weeks=count)
    elif interval == "month":
        return _add_months(start, count)
    elif interval == "year":
        return _add_months(start, 12 * count)
    raise ValueError(f"Unknown recurring interval: {interval}")


def lock_key(subscription_id: str) -> str:
    """Lock shared by operator actions and the billing scheduler."""
    return f"subscription:{subscription_id}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    """Public representation used in outbound events and API responses."""
    return {
        "id": subscription.id,
        "customer_id": subscription.customer_id,
        "product_id": subscription.product_id,
        "account_id": subscription.account_id,
        "status": subscription.status,
        "current_period_start": _iso(subscription.current_period_start),
        "current_period_end": _iso(subscription.current_period_end),
        "trial_start": _iso(subscription.trial_start),
        "trial_end": _iso(subscription.trial_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": _iso(subscription.canceled_at),
        "ended_at": _iso(subscription.ended_at),
        "price": subscription.price,
        "recurring_interval": subscription.recurring_interval,
        "recurring_interval_count": subscription.recurring_interval_count,
        "currency": subscription.currency,
        "metered_units": subscription.metered_units,
        "past_due_at": _iso(subscription.past_due_at),
        "payment_retry_count": subscription.payment_retry_count,
        "next_payment_retry_at": _iso(subscription.next_payment_retry_at),
        "unpaid_at": _iso(subscription.unpaid_at),
    }


def benefits_revoked_payload(subscription: Subscription) -> Dict[str, Any]:
    return {
        "customer_id": subscription.customer_id,
        "subscription_id": subscription.id,
        "product_id": subscription.product_id,
    }


async def load_for_update(db: AsyncSession, subscription_id: str) -> Subscription:
    """
    Raises:
        ResourceNotFound: If the subscription does not exist
    """
    result = await db.execute(
        select(Subscription).where(Subscription.id == subscription_id).with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise ResourceNotFound("Subscription", subscription_id)
    return subscription


def escalate_to_unpaid(
    subscription: Subscription, now: datetime
) -> List[state_machine.TransitionResult]:
    """
    End dunning with every retry failed.

    A subscription that was set to cancel at period end is canceled right
    away instead of waiting out the grace period.
    """
    cancel_requested = subscription.cancel_at_period_end
    results = [state_machine.transition(subscription, SubscriptionStatus.UNPAID, now)]
    if cancel_requested:
        results.append(state_machine.transition(subscription, SubscriptionStatus.CANCELED, now))
    return results


class SubscriptionService:
    """
    Operator actions on one subscription, each in its own transaction.

    Every action holds the subscription lock, so it never interleaves with
    the scheduler acting on the same subscription.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager,
        emitter: EventEmitter,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.emitter = emitter

    @asynccontextmanager
    async def _locked(
        self, subscription_id: str
    ) -> AsyncIterator[Tuple[AsyncSession, Subscription]]:
        async with self.lock_manager.hold(lock_key(subscription_id)):
            async with self.session_factory() as db:
                yield db, await load_for_update(db, subscription_id)

    async def get(self, subscription_id: str) -> Subscription:
        async with self.session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            raise ResourceNotFound("Subscription", subscription_id)
        return subscription

    async def cancel_at_period_end(
        self, subscription_id: str, cancel: bool = True
    ) -> Subscription:
        """
        Set or clear the cancel-at-period-end flag; status is unchanged.

        Raises:
            InvalidStateTransition: If the subscription is not live
        """
        async with self._locked(subscription_id) as (db, subscription):
            status = SubscriptionStatus(subscription.status)
            if status not in state_machine.LIVE_STATES:
                raise InvalidStateTransition(
                    subscription.id,
                    status.value,
                    SubscriptionStatus.CANCELED.value,
                    reason="only live subscriptions can be canceled at period end",
                )

            if subscription.cancel_at_period_end != cancel:
                subscription.cancel_at_period_end = cancel
                if cancel:
                    subscription.canceled_at = utc_now()
                else:
                    subscription.canceled_at = None
                await self.emitter.emit(
                    db,
                    "subscription.updated",
                    subscription_payload(subscription),
                    previous_attributes={"cancel_at_period_end": not cancel},
                )
            await db.commit()

        logger.info(
            "subscription_cancel_at_period_end_set",
            subscription_id=subscription_id,
            cancel_at_period_end=cancel,
        )
        return subscription

    async def cancel_now(self, subscription_id: str) -> Subscription:
        """
        Cancel immediately and revoke benefits.

        Raises:
            InvalidStateTransition: If the current status cannot be canceled
            LockContention: If the scheduler is acting on the subscription
        """
        now = utc_now()
        async with self._locked(subscription_id) as (db, subscription):
            result = state_machine.transition(subscription, SubscriptionStatus.CANCELED, now)
            payload = subscription_payload(subscription)
            await self.emitter.emit(
                db,
                "subscription.canceled",
                payload,
                previous_attributes={"status": result.source.value},
            )
            await self.emitter.emit(
                db, "customer.benefits_revoked", benefits_revoked_payload(subscription)
            )
            await db.commit()
        return subscription

    async def record_usage(self, subscription_id: str, quantity: int) -> Subscription:
        """
        Add metered units to the current period.

        Raises:
            BillingError: If ``quantity`` is not positive or the price is not metered
            InvalidStateTransition: If the subscription has ended
        """
        if quantity <= 0:
            raise BillingError("Usage quantity must be positive", quantity=quantity)

        async with self._locked(subscription_id) as (db, subscription):
            status = SubscriptionStatus(subscription.status)
            if status in state_machine.TERMINAL_STATES:
                raise InvalidStateTransition(
                    subscription.id, status.value, status.value, reason="subscription has ended"
                )
            if not is_metered(parse_price(subscription.price)):
                raise BillingError(
                    "Subscription price is not metered", subscription_id=subscription.id
                )

            subscription.metered_units += quantity
            await self.emitter.emit(
                db,
                "subscription.usage_recorded",
                {
                    "subscription_id": subscription.id,
                    "quantity": quantity,
                    "metered_units": subscription.metered_units,
                },
            )
            await db.commit()

        logger.info(
            "subscription_usage_recorded",
            subscription_id=subscription_id,
            quantity=quantity,
        )
        return subscription
