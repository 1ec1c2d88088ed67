"""
Prometheus metrics for checkout and settlement monitoring.

Tracks:
- Checkout requests and charged amounts
- Settlement transitions
- Coupon reservations and affiliate clicks
- Stripe API calls and errors
- Webhook processing and producer webhook deliveries
- Reconciliation discrepancies
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total number of checkouts created",
    ["status", "currency"],
)

checkout_processing_duration_seconds = Histogram(
    "checkout_processing_duration_seconds",
    "Checkout processing duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

checkout_amount_cents = Histogram(
    "checkout_amount_cents",
    "Charged checkout amounts in cents",
    buckets=(0, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache hits",
    ["source"],  # redis, database, miss
)

# Settlement metrics
settlement_transitions_total = Counter(
    "settlement_transitions_total",
    "Sale status transitions",
    ["from_status", "to_status", "applied"],
)

coupon_redemptions_total = Counter(
    "coupon_redemptions_total",
    "Coupon usage reservations",
    ["result"],  # reserved, exhausted, released
)

affiliate_clicks_total = Counter(
    "affiliate_clicks_total",
    "Tracked affiliate link clicks",
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

producer_webhook_deliveries_total = Counter(
    "producer_webhook_deliveries_total",
    "Deliveries to producer webhook endpoints",
    ["event", "status"],  # delivered, failed
)

# Reconciliation metrics
reconciliation_discrepancies_total = Gauge(
    "reconciliation_discrepancies_total",
    "Total reconciliation discrepancies",
)

reconciliation_discrepancy_cents = Gauge(
    "reconciliation_discrepancy_cents",
    "Reconciliation discrepancy amount in cents",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation job duration in seconds",
    buckets=(10, 30, 60, 120, 300, 600, 1800),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(status: str, currency: str, amount_cents: int) -> None:
        """Record a created checkout."""
        checkout_requests_total.labels(status=status, currency=currency).inc()
        checkout_amount_cents.observe(amount_cents)

    @staticmethod
    def record_checkout_duration(duration_seconds: float) -> None:
        checkout_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_settlement(from_status: str, to_status: str, applied: bool) -> None:
        settlement_transitions_total.labels(
            from_status=from_status,
            to_status=to_status,
            applied="true" if applied else "false",
        ).inc()

    @staticmethod
    def record_coupon_redemption(result: str) -> None:
        coupon_redemptions_total.labels(result=result).inc()

    @staticmethod
    def record_affiliate_click() -> None:
        affiliate_clicks_total.inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_producer_webhook_delivery(event: str, delivered: bool) -> None:
        producer_webhook_deliveries_total.labels(
            event=event, status="delivered" if delivered else "failed"
        ).inc()

    @staticmethod
    def set_reconciliation_metrics(
        discrepancies_count: int, discrepancy_cents: int, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies_total.set(discrepancies_count)
        reconciliation_discrepancy_cents.set(discrepancy_cents)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        distributed_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
