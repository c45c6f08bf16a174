"""
Prometheus metrics for reconciliation monitoring.

Tracks:
- Webhook deliveries by stream and result
- Reconciliation outcomes (retry_queued, invoiced, notified)
- Retry scheduling and dead-lettering
- Order store conflicts and write contention
- Ledger API calls
- Manual review notifications
"""
from prometheus_client import Counter, Histogram

# Webhook metrics
webhook_events_processed_total = Counter(
    "reconciler_webhook_events_processed_total",
    "Total webhook deliveries processed",
    ["source", "result"],  # source: order, payment
)

webhook_processing_duration_seconds = Histogram(
    "reconciler_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Reconciliation metrics
reconciliation_outcomes_total = Counter(
    "reconciler_outcomes_total",
    "Reconciliation outcomes for confirmed payments",
    ["status"],  # retry_queued, invoiced, notified
)

retry_envelopes_scheduled_total = Counter(
    "reconciler_retry_envelopes_scheduled_total",
    "Payments scheduled for redelivery",
)

retry_envelopes_dead_lettered_total = Counter(
    "reconciler_retry_envelopes_dead_lettered_total",
    "Payments whose order never arrived within the attempt limit",
)

retry_scheduled_delay_seconds = Histogram(
    "reconciler_retry_scheduled_delay_seconds",
    "Delay applied to scheduled redeliveries",
    buckets=(5, 10, 20, 40, 80, 160, 320, 640, 900),
)

# Order store metrics
order_conflicts_total = Counter(
    "reconciler_order_conflicts_total",
    "Orders redelivered with different items",
    ["strategy"],
)

order_store_write_contention_total = Counter(
    "reconciler_order_store_write_contention_total",
    "Conditional writes that lost a race and were retried",
)

# Ledger API metrics
ledger_api_requests_total = Counter(
    "reconciler_ledger_api_requests_total",
    "Total Ledger API requests",
    ["operation", "status"],
)

ledger_api_duration_seconds = Histogram(
    "reconciler_ledger_api_duration_seconds",
    "Ledger API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Notification metrics
notifications_sent_total = Counter(
    "reconciler_notifications_sent_total",
    "Manual review notifications",
    ["status"],  # delivered, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(source: str, result: str, duration_seconds: float) -> None:
        """Record webhook processing."""
        webhook_events_processed_total.labels(source=source, result=result).inc()
        webhook_processing_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_outcome(status: str) -> None:
        """Record a reconciliation outcome."""
        reconciliation_outcomes_total.labels(status=status).inc()

    @staticmethod
    def record_retry_scheduled(delay_seconds: float) -> None:
        """Record a scheduled redelivery."""
        retry_envelopes_scheduled_total.inc()
        retry_scheduled_delay_seconds.observe(delay_seconds)

    @staticmethod
    def record_dead_letter() -> None:
        """Record a dead-lettered envelope."""
        retry_envelopes_dead_lettered_total.inc()

    @staticmethod
    def record_order_conflict(strategy: str) -> None:
        """Record an item conflict on a redelivered order."""
        order_conflicts_total.labels(strategy=strategy).inc()

    @staticmethod
    def record_store_write_contention() -> None:
        """Record a lost conditional write."""
        order_store_write_contention_total.inc()

    @staticmethod
    def record_ledger_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Ledger API call."""
        ledger_api_requests_total.labels(operation=operation, status=status).inc()
        ledger_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_notification(delivered: bool) -> None:
        """Record a manual review notification attempt."""
        notifications_sent_total.labels(status="delivered" if delivered else "failed").inc()


# Export singleton instance
metrics = MetricsCollector()
