"""
Error taxonomy for the billing pipeline.

Every failure the pipeline can surface is one of the classes below. Each
carries a stable ``code`` and a ``context`` dict with the identifiers needed
to diagnose it from the logs.
"""
from typing import Any, ClassVar, Dict


class BillingError(Exception):
    """Base class for all billing pipeline errors."""

    code: ClassVar[str] = "billing_error"
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_log(self) -> Dict[str, Any]:
        """Flatten into structlog keyword arguments."""
        return {"error_code": self.code, "error": self.message, **self.context}


class InvalidSignature(BillingError):
    """Webhook failed timestamp or HMAC verification. Rejected at the boundary."""

    code = "invalid_signature"


class DuplicateEvent(BillingError):
    """Event was already processed. A normal skip, not a failure."""

    code = "duplicate_event"

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already processed", event_id=event_id)
        self.event_id = event_id


class InvalidStateTransition(BillingError):
    """Subscription transition not allowed by the lifecycle table."""

    code = "invalid_state_transition"

    def __init__(self, subscription_id: str, source: str, target: str, reason: str = ""):
        message = (
            f"Subscription {subscription_id} cannot transition from '{source}' to '{target}'"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message, subscription_id=subscription_id, source=source, target=target
        )
        self.subscription_id = subscription_id
        self.source = source
        self.target = target


class InsufficientBalance(BillingError):
    """Account balance is below the configured payout minimum."""

    code = "insufficient_balance"

    def __init__(self, account_id: str, balance: int, minimum: int):
        super().__init__(
            f"Account {account_id} balance {balance} is below minimum {minimum}",
            account_id=account_id,
            balance=balance,
            minimum=minimum,
        )
        self.balance = balance
        self.minimum = minimum


class AmountTooLowForPayout(BillingError):
    """Fees would consume the whole payout."""

    code = "amount_too_low_for_payout"


class PayoutAccountNotReady(BillingError):
    """Account is not active or has payouts disabled."""

    code = "payout_account_not_ready"


class LockContention(BillingError):
    """Lock is held elsewhere. Skip and retry next cycle."""

    code = "lock_contention"
    retryable = True

    def __init__(self, key: str, timeout_ms: int):
        super().__init__(
            f"Could not acquire lock {key} within {timeout_ms}ms", key=key, timeout_ms=timeout_ms
        )
        self.key = key


class ProcessorTransientFailure(BillingError):
    """Payment processor call failed in a way that may succeed on retry."""

    code = "processor_transient_failure"
    retryable = True


class ProcessorPermanentFailure(BillingError):
    """Payment processor rejected the call. Needs manual intervention."""

    code = "processor_permanent_failure"


class ResourceNotFound(BillingError):
    """Requested record does not exist."""

    code = "resource_not_found"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} {resource_id} not found", resource=resource, resource_id=resource_id
        )


class ReferenceNotYetAvailable(ResourceNotFound):
    """
    An event refers to a record that an earlier event has not created yet.

    Processors do not guarantee delivery order, so the event is left for
    replay instead of being rejected.
    """

    code = "reference_not_yet_available"
    retryable = True
