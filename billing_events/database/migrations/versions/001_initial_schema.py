"""Initial billing events schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    """Upgrade database schema."""
    # Append-only event log and idempotency markers
    op.create_table(
        "events",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("previous_attributes", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("source IN ('processor', 'internal')", name="valid_event_source"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_events_type_created", "events", ["type", "created_at"])
    op.create_index("idx_events_source_created", "events", ["source", "created_at"])

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )

    # Subscriptions and their orders
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=False),
        sa.Column("trial_start", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("price", JSON_TYPE, nullable=False),
        sa.Column("recurring_interval", sa.String(length=10), nullable=False),
        sa.Column("recurring_interval_count", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("metered_units", sa.BigInteger(), nullable=False),
        sa.Column("past_due_at", sa.DateTime(), nullable=True),
        sa.Column("payment_retry_count", sa.Integer(), nullable=False),
        sa.Column("next_payment_retry_at", sa.DateTime(), nullable=True),
        sa.Column("unpaid_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('incomplete', 'incomplete_expired', 'trialing', 'active', "
            "'past_due', 'unpaid', 'canceled', 'revoked')",
            name="valid_subscription_status",
        ),
        sa.CheckConstraint("current_period_end > current_period_start", name="valid_period"),
        sa.CheckConstraint(
            "recurring_interval IN ('day', 'week', 'month', 'year')", name="valid_interval"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_subscriptions_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )
    op.create_index(op.f("ix_subscriptions_customer_id"), "subscriptions", ["customer_id"])
    op.create_index(op.f("ix_subscriptions_account_id"), "subscriptions", ["account_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("subscription_id", sa.String(length=255), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_reason", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="non_negative_order_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded')", name="valid_order_status"
        ),
        sa.CheckConstraint(
            "billing_reason IN ('subscription_create', 'subscription_cycle', "
            "'subscription_payment_retry')",
            name="valid_billing_reason",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_orders_subscription_id"), "orders", ["subscription_id"])

    # Payee accounts, payouts and the ledger
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("processor_account_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('onboarding', 'active', 'suspended')", name="valid_account_status"
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "payouts",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("fees_amount", sa.BigInteger(), nullable=False),
        sa.Column("account_amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("transfer_id", sa.String(length=255), nullable=True),
        sa.Column("processor_id", sa.String(length=255), nullable=True),
        sa.Column("transferred_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("account_amount > 0", name="positive_account_amount"),
        sa.CheckConstraint("amount = fees_amount + account_amount", name="payout_amounts_add_up"),
        sa.CheckConstraint(
            "status IN ('pending', 'in_transit', 'succeeded', 'failed')",
            name="valid_payout_status",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transfer_id"),
        sa.UniqueConstraint("processor_id"),
    )
    op.create_index("idx_payouts_status_transferred", "payouts", ["status", "transferred_at"])
    op.create_index(op.f("ix_payouts_account_id"), "payouts", ["account_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("payout_id", sa.String(length=255), nullable=True),
        sa.Column("order_id", sa.String(length=255), nullable=True),
        sa.Column("balance_correlation_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "type IN ('payment', 'refund', 'transfer_fee', 'payout_fee', 'payout')",
            name="valid_transaction_type",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_transactions_account_id"), "transactions", ["account_id"])
    op.create_index(op.f("ix_transactions_payout_id"), "transactions", ["payout_id"])
    op.create_index(op.f("ix_transactions_order_id"), "transactions", ["order_id"])
    op.create_index(
        op.f("ix_transactions_balance_correlation_key"),
        "transactions",
        ["balance_correlation_key"],
    )

    # Outbound webhooks
    op.create_table(
        "webhook_endpoints",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("secret", sa.String(length=255), nullable=False),
        sa.Column("event_types", JSON_TYPE, nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
        sa.Column("last_triggered_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("endpoint_id", sa.String(length=255), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("last_status", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed')", name="valid_delivery_status"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("endpoint_id", "event_id", name="uq_delivery_endpoint_event"),
    )
    op.create_index("idx_deliveries_due", "webhook_deliveries", ["status", "next_attempt_at"])
    op.create_index(
        op.f("ix_webhook_deliveries_endpoint_id"), "webhook_deliveries", ["endpoint_id"]
    )
    op.create_index(op.f("ix_webhook_deliveries_event_id"), "webhook_deliveries", ["event_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("webhook_deliveries")
    op.drop_table("webhook_endpoints")
    op.drop_table("transactions")
    op.drop_table("payouts")
    op.drop_table("accounts")
    op.drop_table("orders")
    op.drop_table("subscriptions")
    op.drop_table("processed_events")
    op.drop_table("events")
