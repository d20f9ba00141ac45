"""Core event processing and billing logic."""
from .delivery import DeliveryManager
from .endpoints import EndpointRegistry
from .event_store import EventProcessor, EventStore
from .handlers import BillingEventHandlers, build_default_router
from .ledger import Ledger
from .locking import LockManager
from .outbox import EventEmitter
from .payouts import PayoutService
from .reconciliation import LedgerReconciler
from .router import EventRouter
from .scheduler import BillingScheduler, SchedulerReport
from .signatures import SignatureVerifier
from .subscriptions import SubscriptionService

__all__ = [
    "BillingEventHandlers",
    "BillingScheduler",
    "DeliveryManager",
    "EndpointRegistry",
    "EventEmitter",
    "EventProcessor",
    "EventRouter",
    "EventStore",
    "Ledger",
    "LedgerReconciler",
    "LockManager",
    "PayoutService",
    "SchedulerReport",
    "SignatureVerifier",
    "SubscriptionService",
    "build_default_router",
]
