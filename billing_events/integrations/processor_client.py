"""
Payment processor client for payout settlement.

Wraps the three Stripe Connect calls the payout coordinator needs:
- Transfer from the platform to a connected account
- Payout from a connected account to its bank
- Balance lookup on a connected account

Transient errors are retried with exponential backoff behind a circuit
breaker; everything surfaces as ``ProcessorTransientFailure`` or
``ProcessorPermanentFailure``.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from billing_events.config.settings import Settings, get_settings
from billing_events.core.errors import ProcessorPermanentFailure, ProcessorTransientFailure
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProcessorErrorType(Enum):
    """Classification of processor errors for retry logic."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


class CircuitBreaker:
    """
    Stops calling the processor after repeated failures.

    Opens after ``failure_threshold`` consecutive failures, lets a probe
    through after ``timeout`` seconds and closes again after
    ``success_threshold`` probes succeed.
    """

    def __init__(self, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 2):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Raises:
            ProcessorTransientFailure: If the circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise ProcessorTransientFailure("Circuit breaker is open")

        try:
            result = func()
        except stripe.StripeError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


def classify_error(error: stripe.StripeError) -> ProcessorErrorType:
    if isinstance(error, stripe.RateLimitError):
        return ProcessorErrorType.RATE_LIMIT
    elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
        return ProcessorErrorType.TRANSIENT
    elif isinstance(
        error,
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
        ),
    ):
        return ProcessorErrorType.PERMANENT
    else:
        # Unknown errors are treated as transient
        return ProcessorErrorType.TRANSIENT


class ProcessorClient:
    """Stripe Connect client used by the payout coordinator."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_attempts: int = 5,
        backoff_multiplier: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Args:
            settings: Application settings (defaults to the cached instance)
            max_attempts: Attempts per call for transient errors
            backoff_multiplier: Exponential backoff multiplier in seconds
            circuit_breaker: Breaker shared by all calls of this client
        """
        self.settings = settings or get_settings()
        self.api_key = self.settings.processor_secret_key
        self.api_version = self.settings.processor_api_version
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "processor_client_initialized",
            api_version=self.api_version,
            test_mode=self.settings.is_test_mode,
        )

    def _invoke(self, operation: str, func: Callable[[], Any]) -> Any:
        try:
            result = self.circuit_breaker.call(func)
        except stripe.StripeError as e:
            error_type = classify_error(e)
            metrics.record_processor_call(operation, "error")
            metrics.record_processor_error(error_type.value)
            logger.error(
                "processor_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            if error_type == ProcessorErrorType.PERMANENT:
                raise ProcessorPermanentFailure(str(e), operation=operation) from e
            raise ProcessorTransientFailure(str(e), operation=operation) from e

        metrics.record_processor_call(operation, "success")
        return result

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ProcessorTransientFailure),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=16),
            reraise=True,
        ):
            with attempt:
                return await asyncio.to_thread(self._invoke, operation, func)

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Move funds from the platform balance to a connected account.

        Returns:
            Dict[str, Any]: ``{"id", "amount", "currency"}`` of the transfer

        Raises:
            ProcessorTransientFailure: Retries exhausted on a transient error
            ProcessorPermanentFailure: Processor rejected the transfer
        """
        logger.info(
            "creating_transfer",
            amount=amount,
            destination=destination,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            return stripe.Transfer.create(
                amount=amount,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
                stripe_version=self.api_version,
            )

        transfer = await self._call("create_transfer", _create)
        logger.info("transfer_created", transfer_id=transfer.id)
        return {"id": transfer.id, "amount": transfer.amount, "currency": transfer.currency}

    async def create_payout(
        self,
        amount: int,
        currency: str,
        stripe_account: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Pay out from a connected account to its external bank account.

        Returns:
            Dict[str, Any]: ``{"id", "status"}`` of the processor payout
        """
        logger.info(
            "creating_processor_payout",
            amount=amount,
            stripe_account=stripe_account,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            return stripe.Payout.create(
                amount=amount,
                currency=currency.lower(),
                metadata=metadata or {},
                stripe_account=stripe_account,
                idempotency_key=idempotency_key,
                api_key=self.api_key,
                stripe_version=self.api_version,
            )

        payout = await self._call("create_payout", _create)
        logger.info("processor_payout_created", processor_payout_id=payout.id)
        return {"id": payout.id, "status": payout.status}

    async def retrieve_balance(self, stripe_account: str, currency: str) -> int:
        """Available balance of a connected account in ``currency``, in cents."""

        def _retrieve() -> Any:
            return stripe.Balance.retrieve(
                stripe_account=stripe_account,
                api_key=self.api_key,
                stripe_version=self.api_version,
            )

        balance = await self._call("retrieve_balance", _retrieve)
        return sum(
            entry.amount for entry in balance.available if entry.currency == currency.lower()
        )

    async def ping(self) -> bool:
        """Cheap authenticated call for health checks."""

        def _retrieve() -> Any:
            return stripe.Balance.retrieve(api_key=self.api_key, stripe_version=self.api_version)

        await asyncio.to_thread(self._invoke, "ping", _retrieve)
        return True
