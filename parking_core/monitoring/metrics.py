"""
Prometheus metrics for the parking core.

Tracks:
- Money events by kind and their amounts
- Business rejections by error code
- Unit-of-work retries, exhaustion and duration
- Register closes with discrepancies
- Receipt outbox depth and delivery failures
"""
from prometheus_client import Counter, Gauge, Histogram

# Money event metrics
money_events_total = Counter(
    "parking_money_events_total",
    "Committed money events",
    ["kind"],  # PARKING, LOST_TICKET, PENSION, PARTNER, REFUND
)

money_event_amount_pesos = Histogram(
    "parking_money_event_amount_pesos",
    "Amounts of committed money events in pesos",
    buckets=(10, 25, 50, 100, 200, 500, 1000, 2500, 5000),
)

business_rejections_total = Counter(
    "parking_business_rejections_total",
    "Operations rejected by a business rule",
    ["code"],
)

# Unit of work metrics
transaction_retries_total = Counter(
    "parking_transaction_retries_total",
    "Units of work retried after a storage conflict",
    ["operation"],
)

transaction_exhausted_total = Counter(
    "parking_transaction_exhausted_total",
    "Units of work that ran out of retry attempts",
    ["operation"],
)

transaction_duration_seconds = Histogram(
    "parking_transaction_duration_seconds",
    "Unit of work duration in seconds, retries included",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Cash register metrics
register_closings_total = Counter(
    "parking_register_closings_total",
    "Cash registers closed",
    ["status"],  # CLOSED, RECONCILING
)

register_unreconciled_payments_total = Counter(
    "parking_register_unreconciled_payments_total",
    "Payments accepted without an open cash register",
)

# Receipt outbox metrics
receipt_queue_depth = Gauge(
    "parking_receipt_queue_depth",
    "Receipts waiting for delivery",
)

receipt_delivery_failures_total = Counter(
    "parking_receipt_delivery_failures_total",
    "Receipt deliveries that failed",
    ["kind"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_money_event(kind: str, amount_pesos: float) -> None:
        """Record a committed money event."""
        money_events_total.labels(kind=kind).inc()
        money_event_amount_pesos.observe(amount_pesos)

    @staticmethod
    def record_rejection(code: str) -> None:
        business_rejections_total.labels(code=code).inc()

    @staticmethod
    def record_transaction_retry(operation: str) -> None:
        transaction_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_transaction_exhausted(operation: str) -> None:
        transaction_exhausted_total.labels(operation=operation).inc()

    @staticmethod
    def record_transaction_duration(operation: str, duration_seconds: float) -> None:
        transaction_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_register_closed(status: str) -> None:
        register_closings_total.labels(status=status).inc()

    @staticmethod
    def record_unreconciled_payment() -> None:
        register_unreconciled_payments_total.inc()

    @staticmethod
    def set_receipt_queue_depth(depth: int) -> None:
        """Set receipt outbox depth."""
        receipt_queue_depth.set(depth)

    @staticmethod
    def record_receipt_failure(kind: str) -> None:
        receipt_delivery_failures_total.labels(kind=kind).inc()


# Export singleton instance
metrics = MetricsCollector()
