"""Background workers."""
from .billing_scheduler import start_billing_scheduler
from .delivery_worker import start_delivery_worker
from .event_replayer import start_event_replayer
from .payout_worker import start_payout_worker
from .reconciliation_worker import start_reconciliation_worker
from .runner import PeriodicWorker, run_worker

__all__ = [
    "PeriodicWorker",
    "run_worker",
    "start_billing_scheduler",
    "start_delivery_worker",
    "start_event_replayer",
    "start_payout_worker",
    "start_reconciliation_worker",
]
