"""SQLAlchemy database models for the billing events pipeline."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Naive UTC timestamp; every datetime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def unix_timestamp(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    REVOKED = "revoked"


class EventSource(str, Enum):
    PROCESSOR = "processor"
    INTERNAL = "internal"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class BillingReason(str, Enum):
    SUBSCRIPTION_CREATE = "subscription_create"
    SUBSCRIPTION_CYCLE = "subscription_cycle"
    SUBSCRIPTION_PAYMENT_RETRY = "subscription_payment_retry"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    TRANSFER_FEE = "transfer_fee"
    PAYOUT_FEE = "payout_fee"
    PAYOUT = "payout"


class AccountStatus(str, Enum):
    ONBOARDING = "onboarding"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _in(values: type[Enum]) -> str:
    return ", ".join(f"'{member.value}'" for member in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Event(Base):
    """
    Append-only event log.

    Holds inbound processor events and the internal events emitted for
    outbound delivery. Rows are never updated or deleted.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventSource.PROCESSOR.value
    )
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    previous_attributes: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(f"source IN ({_in(EventSource)})", name="valid_event_source"),
        Index("idx_events_type_created", "type", "created_at"),
        Index("idx_events_source_created", "source", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "data": self.payload,
        }
        if self.previous_attributes is not None:
            data["previous_attributes"] = self.previous_attributes
        return data

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, type={self.type}, source={self.source})>"


class ProcessedEvent(Base):
    """
    Idempotency guard for inbound events.

    Written in the same transaction as the handler's side effects. The
    primary key on ``event_id`` is what makes concurrent deliveries safe.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<ProcessedEvent(event_id={self.event_id})>"


class Subscription(Base):
    """Customer subscription, mutated through the lifecycle state machine."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    trial_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    price: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    recurring_interval: Mapped[str] = mapped_column(String(10), nullable=False, default="month")
    recurring_interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    metered_units: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    past_due_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payment_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_payment_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    unpaid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    modified_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_in(SubscriptionStatus)})", name="valid_subscription_status"),
        CheckConstraint("current_period_end > current_period_start", name="valid_period"),
        CheckConstraint(
            "recurring_interval IN ('day', 'week', 'month', 'year')", name="valid_interval"
        ),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, status={self.status})>"


class BillingOrder(Base):
    """Order created for a subscription's billing period."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=lambda: generate_id("ord")
    )
    subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_reason: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value
    )
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    modified_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_order_amount"),
        CheckConstraint(f"status IN ({_in(OrderStatus)})", name="valid_order_status"),
        CheckConstraint(f"billing_reason IN ({_in(BillingReason)})", name="valid_billing_reason"),
    )

    def __repr__(self) -> str:
        return f"<BillingOrder(id={self.id}, amount={self.amount}, status={self.status})>"


class Account(Base):
    """Payee account that receives subscription revenue and payouts."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountStatus.ONBOARDING.value
    )
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="US")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    processor_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(f"status IN ({_in(AccountStatus)})", name="valid_account_status"),
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, status={self.status})>"


class Payout(Base):
    """Two-phase payout: transfer to the connected account, then payout to bank."""

    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=lambda: generate_id("po")
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.PENDING.value
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fees_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    account_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    processor_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    modified_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("account_amount > 0", name="positive_account_amount"),
        CheckConstraint("amount = fees_amount + account_amount", name="payout_amounts_add_up"),
        CheckConstraint(f"status IN ({_in(PayoutStatus)})", name="valid_payout_status"),
        Index("idx_payouts_status_transferred", "status", "transferred_at"),
    )

    def __repr__(self) -> str:
        return f"<Payout(id={self.id}, account_id={self.account_id}, status={self.status})>"


class Transaction(Base):
    """
    Immutable ledger entry.

    Account balances are always derived by summing these rows. Entries that
    belong to one multi-leg operation share a ``balance_correlation_key``.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=lambda: generate_id("txn")
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    payout_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    balance_correlation_key: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(f"type IN ({_in(TransactionType)})", name="valid_transaction_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, type={self.type}, "
            f"account_id={self.account_id}, amount={self.amount})>"
        )


class WebhookEndpoint(Base):
    """Subscriber endpoint for outbound event delivery."""

    __tablename__ = "webhook_endpoints"

    id: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=lambda: generate_id("we")
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    event_types: Mapped[List[str]] = mapped_column(JSONType, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    modified_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def subscribes_to(self, event_type: str) -> bool:
        return self.enabled and ("*" in self.event_types or event_type in self.event_types)

    def __repr__(self) -> str:
        return f"<WebhookEndpoint(id={self.id}, url={self.url}, enabled={self.enabled})>"


class WebhookDelivery(Base):
    """
    One event delivered to one endpoint.

    ``attempt``, ``next_attempt_at`` and ``last_status`` form the retry
    schedule; ``next_attempt_at`` is cleared once the delivery is settled.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=lambda: generate_id("whd")
    )
    endpoint_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("endpoint_id", "event_id", name="uq_delivery_endpoint_event"),
        CheckConstraint(f"status IN ({_in(DeliveryStatus)})", name="valid_delivery_status"),
        Index("idx_deliveries_due", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookDelivery(id={self.id}, endpoint_id={self.endpoint_id}, "
            f"attempt={self.attempt}, status={self.status})>"
        )
