"""
Subscription lifecycle state machine.

All status changes go through ``transition``. A rejected transition raises
``InvalidStateTransition`` before anything on the subscription is touched.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional

import structlog

from billing_events.core.errors import InvalidStateTransition
from billing_events.database.models import Subscription, SubscriptionStatus, utc_now

logger = structlog.get_logger(__name__)

S = SubscriptionStatus

TRANSITIONS: Mapping[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.TRIALING, S.ACTIVE, S.INCOMPLETE_EXPIRED}),
    S.TRIALING: frozenset({S.ACTIVE, S.UNPAID, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID}),
    S.UNPAID: frozenset({S.ACTIVE, S.REVOKED, S.CANCELED}),
    S.INCOMPLETE_EXPIRED: frozenset(),
    S.CANCELED: frozenset(),
    S.REVOKED: frozenset(),
}

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

# Statuses on which cancel_at_period_end may be set.
LIVE_STATES = frozenset({S.ACTIVE, S.TRIALING, S.PAST_DUE})

# Statuses the billing scheduler renews at period end.
RENEWABLE_STATES = frozenset({S.ACTIVE, S.TRIALING})


def can_transition(source: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    return S(target) in TRANSITIONS[S(source)]


@dataclass
class TransitionResult:
    subscription_id: str
    source: SubscriptionStatus
    target: SubscriptionStatus
    changes: Dict[str, Any] = field(default_factory=dict)


def _planned_changes(
    subscription: Subscription, target: SubscriptionStatus, now: datetime
) -> Dict[str, Any]:
    changes: Dict[str, Any] = {"status": target.value}

    if target == S.CANCELED:
        changes["canceled_at"] = subscription.canceled_at or now
        changes["ended_at"] = now
    elif target in (S.REVOKED, S.INCOMPLETE_EXPIRED):
        changes["ended_at"] = now

    if target not in LIVE_STATES:
        changes["cancel_at_period_end"] = False

    if target == S.ACTIVE:
        changes.update(
            past_due_at=None,
            payment_retry_count=0,
            next_payment_retry_at=None,
            unpaid_at=None,
        )
    elif target == S.PAST_DUE:
        changes["past_due_at"] = now
        changes["payment_retry_count"] = 0
    elif target == S.UNPAID:
        changes["unpaid_at"] = now
        changes["next_payment_retry_at"] = None

    return changes


def transition(
    subscription: Subscription,
    target: SubscriptionStatus | str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Move ``subscription`` to ``target``.

    Raises:
        InvalidStateTransition: If the lifecycle table does not allow it
    """
    source = S(subscription.status)
    target = S(target)
    now = now or utc_now()

    if target not in TRANSITIONS[source]:
        logger.warning(
            "subscription_transition_rejected",
            subscription_id=subscription.id,
            source=source.value,
            target=target.value,
        )
        raise InvalidStateTransition(subscription.id, source.value, target.value)

    changes = _planned_changes(subscription, target, now)
    for attribute, value in changes.items():
        setattr(subscription, attribute, value)

    logger.info(
        "subscription_transitioned",
        subscription_id=subscription.id,
        source=source.value,
        target=target.value,
    )
    return TransitionResult(
        subscription_id=subscription.id, source=source, target=target, changes=changes
    )
