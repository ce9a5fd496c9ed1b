"""Prometheus metrics for installment charging, retries, batches and early settlement"""

from prometheus_client import Counter, Histogram

# Installment metrics
charge_outcome_counter = Counter(
    "bnpl_installment_charge_total",
    "Installment charge attempts by outcome",
    ["outcome"],  # completed | retry_scheduled | failed | skipped | error
)

schedule_counter = Counter(
    "bnpl_schedule_total",
    "Schedule creation and repair attempts",
    ["operation", "outcome"],  # create|repair, success|failure
)

integrity_violation_counter = Counter(
    "bnpl_schedule_integrity_violations_total",
    "Transactions skipped by the batch because their schedule is corrupt",
)

# Batch metrics
batch_duration_histogram = Histogram(
    "bnpl_batch_duration_seconds",
    "Wall-clock duration of a batch run",
    ["run_type"],  # daily | retry_sweep | manual
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "gateway_latency_seconds",
    "Payment gateway response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "gateway_failures_total",
    "Failed payment gateway calls",
    ["kind"],  # retryable | fatal
)

# Early payment metrics
early_settlement_counter = Counter(
    "bnpl_early_settlement_total",
    "Early settlements by outcome",
    ["outcome"],
)

discount_granted_counter = Counter(
    "bnpl_discount_granted_cents_total",
    "Cumulative early payment discount granted, in cents",
)

# Notification outbox
notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_charge_outcome(outcome: str) -> None:
    charge_outcome_counter.labels(outcome=outcome).inc()


def record_schedule(operation: str, success: bool) -> None:
    schedule_counter.labels(operation=operation, outcome="success" if success else "failure").inc()


def record_early_settlement(success: bool, discount_cents: int = 0) -> None:
    """Record settlement outcome and the discount it granted"""
    early_settlement_counter.labels(outcome="success" if success else "failure").inc()
    if success and discount_cents > 0:
        discount_granted_counter.inc(discount_cents)
