"""
Prometheus metrics for the payment orchestrator.

Tracks:
- Upstream provider calls, retries and durations
- Circuit breaker state per provider
- Webhook deliveries by outcome
- Canonical state transitions
- Upstream order creation vs reuse
- Reconciliation runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Upstream provider metrics
provider_calls_total = Counter(
    "payment_provider_calls_total",
    "Total upstream provider calls",
    ["provider", "endpoint", "outcome"],  # outcome: success, failure
)

provider_call_attempts_total = Counter(
    "payment_provider_call_attempts_total",
    "Total upstream provider call attempts including retries",
    ["provider", "endpoint"],
)

provider_call_errors_total = Counter(
    "payment_provider_call_errors_total",
    "Total classified upstream errors",
    ["provider", "code"],
)

provider_call_duration_seconds = Histogram(
    "payment_provider_call_duration_seconds",
    "Upstream provider call attempt duration in seconds",
    ["provider", "endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "payment_provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_deliveries_total = Counter(
    "payment_webhook_deliveries_total",
    "Total webhook deliveries",
    ["provider", "outcome"],  # processed, deduped, rejected, failed
)

webhook_processing_duration_seconds = Histogram(
    "payment_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# State machine metrics
state_transitions_total = Counter(
    "payment_state_transitions_total",
    "Applied canonical status transitions",
    ["from_status", "to_status", "source"],
)

# Idempotency metrics
upstream_orders_total = Counter(
    "payment_upstream_orders_total",
    "Upstream order lookups by outcome",
    ["provider", "outcome"],  # created, reused
)

keyed_lock_wait_seconds = Histogram(
    "payment_keyed_lock_wait_seconds",
    "Time spent acquiring a keyed lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)

# Reconciliation metrics
reconciliation_runs_total = Counter(
    "payment_reconciliation_runs_total",
    "Total reconciliation runs",
    ["status"],  # completed, failed
)

reconciliation_sessions_total = Counter(
    "payment_reconciliation_sessions_total",
    "Sessions examined by reconciliation",
    ["outcome"],  # reconciled, skipped
)

reconciliation_duration_seconds = Histogram(
    "payment_reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "payment_reconciliation_last_run_timestamp",
    "Timestamp of last completed reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_provider_attempt(provider: str, endpoint: str, duration_seconds: float) -> None:
        """Record one upstream call attempt."""
        provider_call_attempts_total.labels(provider=provider, endpoint=endpoint).inc()
        provider_call_duration_seconds.labels(provider=provider, endpoint=endpoint).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_call(provider: str, endpoint: str, outcome: str) -> None:
        """Record the final outcome of an upstream call."""
        provider_calls_total.labels(provider=provider, endpoint=endpoint, outcome=outcome).inc()

    @staticmethod
    def record_provider_error(provider: str, code: str) -> None:
        """Record a classified upstream error."""
        provider_call_errors_total.labels(provider=provider, code=code).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook delivery processing."""
        webhook_deliveries_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_state_transition(from_status: str, to_status: str, source: str) -> None:
        """Record an applied state transition."""
        state_transitions_total.labels(
            from_status=from_status, to_status=to_status, source=source
        ).inc()

    @staticmethod
    def record_upstream_order(provider: str, outcome: str) -> None:
        """Record upstream order creation or reuse."""
        upstream_orders_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_lock_acquired(wait_seconds: float) -> None:
        """Record keyed lock acquisition wait."""
        keyed_lock_wait_seconds.observe(wait_seconds)

    @staticmethod
    def record_reconciliation_run(
        status: str, reconciled: int, skipped: int, duration_seconds: float
    ) -> None:
        """Record a reconciliation run."""
        reconciliation_runs_total.labels(status=status).inc()
        reconciliation_duration_seconds.observe(duration_seconds)
        if reconciled:
            reconciliation_sessions_total.labels(outcome="reconciled").inc(reconciled)
        if skipped:
            reconciliation_sessions_total.labels(outcome="skipped").inc(skipped)
        if status == "completed":
            reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
