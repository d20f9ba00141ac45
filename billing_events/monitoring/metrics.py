"""
Prometheus metrics for the billing pipeline.

Tracks:
- Inbound webhook verification and processing
- Outbound delivery attempts and exhausted deliveries
- Scheduler runs and per-subscription outcomes
- Distributed lock contention
- Payout creation and settlement
- Processor API calls and errors
- Ledger reconciliation findings
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Inbound webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total inbound webhook requests",
    ["result"],  # accepted, rejected, stored_duplicate
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total inbound events processed",
    ["event_type", "status"],  # success, duplicate, no_handler, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Inbound event processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Outbound delivery metrics
webhook_delivery_attempts_total = Counter(
    "webhook_delivery_attempts_total",
    "Total outbound delivery attempts",
    ["result"],  # succeeded, retry_scheduled, exhausted
)

webhook_deliveries_exhausted_total = Counter(
    "webhook_deliveries_exhausted_total",
    "Deliveries that failed every attempt and were given up",
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Outbound delivery request duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total billing scheduler runs",
)

scheduler_subscriptions_total = Counter(
    "scheduler_subscriptions_total",
    "Subscriptions handled by the scheduler",
    ["action"],  # SchedulerReport field names
)

scheduler_run_duration_seconds = Histogram(
    "scheduler_run_duration_seconds",
    "Billing scheduler run duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, contended
)

distributed_lock_duration_seconds = Histogram(
    "distributed_lock_duration_seconds",
    "Distributed lock hold duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

# Payout metrics
payouts_total = Counter(
    "payouts_total",
    "Payout lifecycle steps",
    ["stage"],  # created, transferred, triggered, succeeded, failed
)

payout_amount_cents = Histogram(
    "payout_amount_cents",
    "Payout amounts in cents",
    buckets=(100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Processor API metrics
processor_api_requests_total = Counter(
    "processor_api_requests_total",
    "Total payment processor API requests",
    ["operation", "status"],
)

processor_api_errors_total = Counter(
    "processor_api_errors_total",
    "Total payment processor API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

processor_circuit_breaker_state = Gauge(
    "processor_circuit_breaker_state",
    "Processor circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
ledger_unbalanced_keys = Gauge(
    "ledger_unbalanced_keys",
    "Correlation keys whose ledger legs do not net to zero",
)

payouts_stuck_in_transit = Gauge(
    "payouts_stuck_in_transit",
    "Payouts in transit longer than the configured threshold",
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last ledger reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_received(result: str) -> None:
        webhook_events_received_total.labels(result=result).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record inbound event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_delivery_attempt(result: str, duration_seconds: float) -> None:
        webhook_delivery_attempts_total.labels(result=result).inc()
        webhook_delivery_duration_seconds.observe(duration_seconds)
        if result == "exhausted":
            webhook_deliveries_exhausted_total.inc()

    @staticmethod
    def record_scheduler_run(duration_seconds: float) -> None:
        scheduler_runs_total.inc()
        scheduler_run_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_scheduler_action(action: str) -> None:
        scheduler_subscriptions_total.labels(action=action).inc()

    @staticmethod
    def record_distributed_lock(status: str, duration_seconds: float = 0) -> None:
        """Record distributed lock acquisition."""
        distributed_lock_acquisitions_total.labels(status=status).inc()
        if duration_seconds > 0:
            distributed_lock_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_payout(stage: str, amount_cents: int = 0) -> None:
        payouts_total.labels(stage=stage).inc()
        if stage == "created":
            payout_amount_cents.observe(amount_cents)

    @staticmethod
    def record_processor_call(operation: str, status: str) -> None:
        processor_api_requests_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_processor_error(error_type: str) -> None:
        processor_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        processor_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def set_reconciliation_metrics(unbalanced_keys: int, stuck_payouts: int) -> None:
        ledger_unbalanced_keys.set(unbalanced_keys)
        payouts_stuck_in_transit.set(stuck_payouts)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
