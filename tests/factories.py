"""Builders for test records and signed webhook requests."""
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from billing_events.core.signatures import compute_signature
from billing_events.database.models import (
    Account,
    AccountStatus,
    BillingOrder,
    BillingReason,
    Event,
    EventSource,
    OrderStatus,
    Subscription,
    Transaction,
    TransactionType,
    generate_id,
    unix_timestamp,
    utc_now,
)
from billing_events.services import Services

WEBHOOK_SECRET = "whsec_test_inbound_secret"


def signed_headers(
    body: bytes,
    event_id: Optional[str] = None,
    timestamp: Optional[int] = None,
    secret: str = WEBHOOK_SECRET,
) -> Dict[str, str]:
    """Headers of a correctly signed inbound webhook."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Timestamp": str(timestamp),
        "X-Webhook-Signature": f"v1={compute_signature(body, timestamp, secret)}",
    }
    if event_id is not None:
        headers["X-Webhook-ID"] = event_id
    return headers


async def create_account(
    services: Services,
    account_id: str = "acct_1",
    country: str = "US",
    status: AccountStatus = AccountStatus.ACTIVE,
    payouts_enabled: bool = True,
    processor_account_id: Optional[str] = "acct_stripe_1",
) -> Account:
    account = Account(
        id=account_id,
        status=status.value,
        payouts_enabled=payouts_enabled,
        country=country,
        currency="usd",
        processor_account_id=processor_account_id,
    )
    async with services.database.session_factory() as db:
        db.add(account)
        await db.commit()
    return account


async def credit(services: Services, account_id: str, amount: int) -> None:
    """Put ``amount`` cents on an account's ledger as a payment."""
    async with services.database.session_factory() as db:
        db.add(
            Transaction(
                type=TransactionType.PAYMENT.value,
                amount=amount,
                currency="usd",
                account_id=account_id,
            )
        )
        await db.commit()


async def create_subscription(
    services: Services,
    subscription_id: str = "sub_1",
    status: str = "active",
    price: Optional[Dict[str, Any]] = None,
    period_start: Optional[datetime] = None,
    period_days: int = 30,
    **fields: Any,
) -> Subscription:
    period_start = period_start or utc_now() - timedelta(days=1)
    values: Dict[str, Any] = {
        "customer_id": "cus_1",
        "product_id": "prod_1",
        "account_id": "acct_1",
        "recurring_interval": "month",
        "recurring_interval_count": 1,
        "currency": "usd",
        "cancel_at_period_end": False,
        "metered_units": 0,
        "payment_retry_count": 0,
    }
    values.update(fields)
    subscription = Subscription(
        id=subscription_id,
        status=status,
        current_period_start=period_start,
        current_period_end=period_start + timedelta(days=period_days),
        price=price or {"amount_type": "fixed", "price_amount": 2000},
        **values,
    )
    async with services.database.session_factory() as db:
        db.add(subscription)
        await db.commit()
    return subscription


async def create_order(
    services: Services,
    subscription_id: str = "sub_1",
    amount: int = 2000,
    status: OrderStatus = OrderStatus.PENDING,
) -> BillingOrder:
    now = utc_now()
    order = BillingOrder(
        subscription_id=subscription_id,
        customer_id="cus_1",
        account_id="acct_1",
        amount=amount,
        currency="usd",
        billing_reason=BillingReason.SUBSCRIPTION_CYCLE.value,
        status=status.value,
        period_start=now,
        period_end=now + timedelta(days=30),
    )
    async with services.database.session_factory() as db:
        db.add(order)
        await db.commit()
    return order


async def load(services: Services, model: Any, key: str) -> Any:
    async with services.database.session_factory() as db:
        return await db.get(model, key)


async def store_event(
    services: Services,
    event_type: str,
    data: Dict[str, Any],
    event_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Event:
    """Store an inbound processor event the way the webhook route does."""
    now = created_at or utc_now()
    event = Event(
        id=event_id or generate_id("evt"),
        type=event_type,
        source=EventSource.PROCESSOR.value,
        timestamp=unix_timestamp(now),
        payload=data,
        created_at=now,
    )
    await services.store.append(event)
    return event
