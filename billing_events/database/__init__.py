"""Database package for the billing events pipeline."""
from .connection import Database
from .models import (
    Account,
    Base,
    BillingOrder,
    Event,
    Payout,
    ProcessedEvent,
    Subscription,
    Transaction,
    WebhookDelivery,
    WebhookEndpoint,
)

__all__ = [
    "Account",
    "Base",
    "BillingOrder",
    "Database",
    "Event",
    "Payout",
    "ProcessedEvent",
    "Subscription",
    "Transaction",
    "WebhookDelivery",
    "WebhookEndpoint",
]
