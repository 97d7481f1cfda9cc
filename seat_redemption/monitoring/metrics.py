"""
Prometheus metrics for the redemption engine.

Tracks:
- Redemption attempts by channel and outcome
- Webhook notifications by gateway and acknowledgement
- Order state transitions
- Gateway API calls and latency
- Lock wait and hold times
- Sweeper runs
"""
from prometheus_client import Counter, Gauge, Histogram

# Redemption metrics
redemption_attempts_total = Counter(
    "redemption_attempts_total",
    "Total redemption attempts",
    ["channel", "outcome"],  # outcome: success, degraded, or an error kind
)

seats_claimed_total = Counter(
    "seats_claimed_total",
    "Total seats claimed on target resources",
)

# Webhook metrics
webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Total payment gateway notifications received",
    ["gateway", "ack"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Notification acknowledgement duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Order metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order state transitions",
    ["kind", "from_status", "to_status"],
)

reconciliation_mismatches_total = Counter(
    "reconciliation_mismatches_total",
    "Orders blocked from paid because of an amount mismatch",
    ["kind"],
)

fulfillments_total = Counter(
    "fulfillments_total",
    "Total fulfillment attempts for paid orders",
    ["kind", "status"],  # fulfilled, failed, replayed
)

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Lock metrics
lock_wait_seconds = Histogram(
    "lock_wait_seconds",
    "Time spent waiting to acquire engine locks",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

lock_hold_seconds = Histogram(
    "lock_hold_seconds",
    "Time engine locks were held",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

locks_active = Gauge(
    "locks_active",
    "Number of lock keys currently tracked",
)

# Sweeper metrics
sweeper_runs_total = Counter(
    "sweeper_runs_total",
    "Total order sweeper runs",
    ["status"],
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last order sweeper run",
)

orders_expired_total = Counter(
    "orders_expired_total",
    "Total orders expired by the sweeper",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_redemption(channel: str, outcome: str) -> None:
        """Record a redemption attempt."""
        redemption_attempts_total.labels(channel=channel, outcome=outcome).inc()
        if outcome in ("success", "degraded"):
            seats_claimed_total.inc()

    @staticmethod
    def record_webhook(gateway: str, ack: str) -> None:
        """Record an acknowledged notification."""
        webhook_notifications_total.labels(gateway=gateway, ack=ack).inc()

    @staticmethod
    def record_webhook_duration(gateway: str, duration_seconds: float) -> None:
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_transition(kind: str, from_status: str, to_status: str) -> None:
        """Record an order state transition."""
        order_transitions_total.labels(
            kind=kind, from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_mismatch(kind: str) -> None:
        reconciliation_mismatches_total.labels(kind=kind).inc()

    @staticmethod
    def record_fulfillment(kind: str, status: str) -> None:
        fulfillments_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_lock_wait(duration_seconds: float) -> None:
        lock_wait_seconds.observe(duration_seconds)

    @staticmethod
    def record_lock_hold(duration_seconds: float) -> None:
        lock_hold_seconds.observe(duration_seconds)

    @staticmethod
    def set_active_locks(count: int) -> None:
        locks_active.set(count)

    @staticmethod
    def record_sweeper_run(status: str, expired: int, timestamp: float) -> None:
        """Record an order sweeper run."""
        sweeper_runs_total.labels(status=status).inc()
        sweeper_last_run_timestamp.set(timestamp)
        if expired:
            orders_expired_total.inc(expired)


# Global metrics collector instance
metrics = MetricsCollector()
