"""
Billing cycle scheduler.

One run makes a pass for each kind of time-based change:
- Renewal: periods that have ended are renewed or, when flagged, canceled
- Dunning: failed payments are retried and eventually escalated
- Final action: unpaid subscriptions past the grace period are ended
- Expiry: subscriptions left incomplete too long are expired

Each subscription is handled under its ``subscription:{id}`` lock in its own
transaction, so one failure never affects the others.
"""
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.config.settings import Settings
from billing_events.core import state_machine
from billing_events.core.errors import BillingError, LockContention
from billing_events.core.handlers import create_order, order_payload
from billing_events.core.locking import LockManager
from billing_events.core.outbox import EventEmitter
from billing_events.core.pricing import order_amount, parse_price
from billing_events.core.subscriptions import (
    advance_period,
    benefits_revoked_payload,
    escalate_to_unpaid,
    load_for_update,
    lock_key,
    subscription_payload,
)
from billing_events.database.models import (
    BillingOrder,
    BillingReason,
    Subscription,
    SubscriptionStatus,
    utc_now,
)
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

S = SubscriptionStatus
RENEWABLE_STATUSES = sorted(status.value for status in state_machine.RENEWABLE_STATES)

# Returns the action taken, or None when the subscription no longer qualifies.
SubscriptionAction = Callable[[AsyncSession, Subscription, datetime], Awaitable[Optional[str]]]


@dataclass
class SchedulerReport:
    renewed: int = 0
    canceled: int = 0
    dunning_retries: int = 0
    unpaid: int = 0
    final_actions: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, action: str) -> None:
        setattr(self, action, getattr(self, action) + 1)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class BillingScheduler:
    """Periodic driver of time-based subscription transitions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager,
        emitter: EventEmitter,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.emitter = emitter
        self.settings = settings

    async def _select_ids(self, *criteria) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .where(*criteria)
                .order_by(Subscription.current_period_end)
                .limit(self.settings.scheduler_batch_size)
            )
            return list(result.scalars().all())

    async def _handle(
        self,
        subscription_id: str,
        action: SubscriptionAction,
        now: datetime,
        report: SchedulerReport,
    ) -> None:
        key = lock_key(subscription_id)
        try:
            async with self.lock_manager.hold(key, self.settings.lock_acquire_timeout_ms):
                async with self.session_factory() as db:
                    subscription = await load_for_update(db, subscription_id)
                    outcome = await action(db, subscription, now)
                    await db.commit()
        except LockContention:
            logger.info("scheduler_lock_contention", subscription_id=subscription_id)
            metrics.record_scheduler_action("skipped")
            report.skipped += 1
            return
        except BillingError as e:
            logger.error(
                "scheduler_subscription_failed", subscription_id=subscription_id, **e.to_log()
            )
            metrics.record_scheduler_action("failed")
            report.failed += 1
            return
        except Exception:
            logger.exception("scheduler_subscription_failed", subscription_id=subscription_id)
            metrics.record_scheduler_action("failed")
            report.failed += 1
            return

        if outcome is None:
            return
        metrics.record_scheduler_action(outcome)
        report.record(outcome)

    async def _cancel(self, db: AsyncSession, subscription: Subscription, now: datetime) -> None:
        previous_status = subscription.status
        state_machine.transition(subscription, S.CANCELED, now)
        await self.emitter.emit(
            db,
            "subscription.canceled",
            subscription_payload(subscription),
            previous_attributes={"status": previous_status},
        )
        await self.emitter.emit(
            db, "customer.benefits_revoked", benefits_revoked_payload(subscription)
        )

    async def _renew(
        self, db: AsyncSession, subscription: Subscription, now: datetime
    ) -> Optional[str]:
        status = S(subscription.status)
        if status not in state_machine.RENEWABLE_STATES or subscription.current_period_end > now:
            return None

        if subscription.cancel_at_period_end:
            await self._cancel(db, subscription, now)
            logger.info("subscription_canceled_at_period_end", subscription_id=subscription.id)
            return "canceled"

        if status == S.TRIALING:
            state_machine.transition(subscription, S.ACTIVE, now)

        # Metered usage is billed in arrears for the period that just ended.
        amount = order_amount(parse_price(subscription.price), subscription.metered_units)
        previous_end = subscription.current_period_end
        subscription.current_period_start = previous_end
        subscription.current_period_end = advance_period(
            previous_end, subscription.recurring_interval, subscription.recurring_interval_count
        )
        subscription.metered_units = 0

        order = await create_order(db, subscription, BillingReason.SUBSCRIPTION_CYCLE, amount)
        await self.emitter.emit(db, "order.created", order_payload(order))
        await self.emitter.emit(
            db,
            "subscription.updated",
            subscription_payload(subscription),
            previous_attributes={
                "status": status.value,
                "current_period_end": previous_end.isoformat(),
            },
        )
        logger.info(
            "subscription_renewed",
            subscription_id=subscription.id,
            order_id=order.id,
            amount=amount,
            current_period_end=subscription.current_period_end.isoformat(),
        )
        return "renewed"

    async def _retry_amount(self, db: AsyncSession, subscription: Subscription) -> int:
        result = await db.execute(
            select(BillingOrder.amount)
            .where(BillingOrder.subscription_id == subscription.id)
            .order_by(BillingOrder.created_at.desc())
            .limit(1)
        )
        amount = result.scalar_one_or_none()
        if amount is None:
            return order_amount(parse_price(subscription.price))
        return amount

    async def _dunning(
        self, db: AsyncSession, subscription: Subscription, now: datetime
    ) -> Optional[str]:
        if (
            subscription.status != S.PAST_DUE.value
            or subscription.next_payment_retry_at is None
            or subscription.next_payment_retry_at > now
        ):
            return None

        retry_days = self.settings.dunning_retry_days
        previous_status = subscription.status

        if subscription.payment_retry_count >= len(retry_days):
            escalate_to_unpaid(subscription, now)
            await self.emitter.emit(
                db,
                "subscription.updated",
                subscription_payload(subscription),
                previous_attributes={"status": previous_status},
            )
            if subscription.status == S.CANCELED.value:
                await self.emitter.emit(
                    db, "customer.benefits_revoked", benefits_revoked_payload(subscription)
                )
            logger.info(
                "subscription_dunning_exhausted",
                subscription_id=subscription.id,
                status=subscription.status,
            )
            return "unpaid"

        amount = await self._retry_amount(db, subscription)
        order = await create_order(
            db, subscription, BillingReason.SUBSCRIPTION_PAYMENT_RETRY, amount
        )
        subscription.payment_retry_count += 1
        attempt = subscription.payment_retry_count
        if attempt < len(retry_days):
            subscription.next_payment_retry_at = subscription.past_due_at + timedelta(
                days=retry_days[attempt]
            )
        else:
            # Last retry: give its outcome a window before escalating.
            subscription.next_payment_retry_at = now + timedelta(
                hours=self.settings.dunning_retry_timeout_hours
            )

        await self.emitter.emit(db, "order.created", order_payload(order))
        logger.info(
            "subscription_payment_retry_scheduled",
            subscription_id=subscription.id,
            order_id=order.id,
            attempt=attempt,
            next_payment_retry_at=subscription.next_payment_retry_at.isoformat(),
        )
        return "dunning_retries"

    async def _final_action(
        self, db: AsyncSession, subscription: Subscription, now: datetime
    ) -> Optional[str]:
        grace = timedelta(days=self.settings.dunning_grace_period_days)
        if (
            subscription.status != S.UNPAID.value
            or subscription.unpaid_at is None
            or subscription.unpaid_at + grace > now
        ):
            return None

        target = S(self.settings.dunning_final_action)
        if target == S.CANCELED:
            await self._cancel(db, subscription, now)
        else:
            state_machine.transition(subscription, target, now)
            await self.emitter.emit(
                db,
                "subscription.revoked",
                subscription_payload(subscription),
                previous_attributes={"status": S.UNPAID.value},
            )
            await self.emitter.emit(
                db, "customer.benefits_revoked", benefits_revoked_payload(subscription)
            )
        logger.info(
            "subscription_dunning_final_action",
            subscription_id=subscription.id,
            status=subscription.status,
        )
        return "final_actions"

    async def _expire(
        self, db: AsyncSession, subscription: Subscription, now: datetime
    ) -> Optional[str]:
        cutoff = now - timedelta(hours=self.settings.incomplete_expiry_hours)
        if subscription.status != S.INCOMPLETE.value or subscription.created_at > cutoff:
            return None

        state_machine.transition(subscription, S.INCOMPLETE_EXPIRED, now)
        await self.emitter.emit(
            db,
            "subscription.updated",
            subscription_payload(subscription),
            previous_attributes={"status": S.INCOMPLETE.value},
        )
        logger.info("subscription_incomplete_expired", subscription_id=subscription.id)
        return "expired"

    async def run(self, now: Optional[datetime] = None) -> SchedulerReport:
        """
        Run every pass once.

        Args:
            now: Reference time (naive UTC); defaults to the current time

        Returns:
            SchedulerReport: Counts per outcome
        """
        now = now or utc_now()
        started = time.monotonic()
        report = SchedulerReport()
        grace = timedelta(days=self.settings.dunning_grace_period_days)
        expiry_cutoff = now - timedelta(hours=self.settings.incomplete_expiry_hours)

        passes = [
            (
                self._renew,
                (
                    Subscription.status.in_(RENEWABLE_STATUSES),
                    Subscription.current_period_end <= now,
                ),
            ),
            (
                self._dunning,
                (
                    Subscription.status == S.PAST_DUE.value,
                    Subscription.next_payment_retry_at <= now,
                ),
            ),
            (
                self._final_action,
                (
                    Subscription.status == S.UNPAID.value,
                    Subscription.unpaid_at <= now - grace,
                ),
            ),
            (
                self._expire,
                (
                    Subscription.status == S.INCOMPLETE.value,
                    Subscription.created_at <= expiry_cutoff,
                ),
            ),
        ]

        for action, criteria in passes:
            for subscription_id in await self._select_ids(*criteria):
                await self._handle(subscription_id, action, now, report)

        duration = time.monotonic() - started
        metrics.record_scheduler_run(duration)
        logger.info("scheduler_run_completed", duration_seconds=duration, **report.to_dict())
        return report
