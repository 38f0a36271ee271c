"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"


class BillingMetrics:
    """
    Centralized metrics for the Tutor Billing API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Session lifecycle transitions (by operation and outcome)
    - Token movements (deducted, credited, refunded)
    - Withdrawals and payment webhooks
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "tutor_billing_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "tutor_billing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "tutor_billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "tutor_billing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Session Metrics
        # ====================================================================
        self.session_transitions_total = Counter(
            "tutor_billing_session_transitions_total",
            "Class session lifecycle operations",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.session_active_seconds = Histogram(
            "tutor_billing_session_active_seconds",
            "Active (non-paused) seconds of completed sessions",
            buckets=(300, 900, 1800, 3600, 5400, 7200, 10800),
        )

        self.live_clock_streams = Gauge(
            "tutor_billing_live_clock_streams",
            "Open websocket clock streams",
        )

        # ====================================================================
        # Token Metrics
        # ====================================================================
        self.token_transactions_total = Counter(
            "tutor_billing_token_transactions_total",
            "Ledger transactions written",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.tokens_moved_total = Counter(
            "tutor_billing_tokens_moved_total",
            "Tokens moved through the ledger",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.wallets_created_total = Counter(
            "tutor_billing_wallets_created_total",
            "Total wallets created",
        )

        # ====================================================================
        # Withdrawal & Payment Metrics
        # ====================================================================
        self.withdrawals_total = Counter(
            "tutor_billing_withdrawals_total",
            "Withdrawal request status changes",
            ["status"],
        )

        self.webhook_events_total = Counter(
            "tutor_billing_webhook_events_total",
            "Payment provider webhook events handled",
            ["event_type"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "tutor_billing_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_session_transition(self, operation: str, success: bool) -> None:
        """Record a lifecycle operation outcome."""
        self.session_transitions_total.labels(
            operation=operation, outcome="success" if success else "failure"
        ).inc()

    def record_session_completed(self, active_seconds: int) -> None:
        self.session_active_seconds.observe(active_seconds)

    def record_token_transaction(self, transaction_type: str, amount_tokens: int) -> None:
        """Record a ledger write."""
        self.token_transactions_total.labels(transaction_type=transaction_type).inc()
        self.tokens_moved_total.labels(transaction_type=transaction_type).inc(amount_tokens)

    def record_withdrawal(self, status: str) -> None:
        self.withdrawals_total.labels(status=status).inc()

    def record_webhook_event(self, event_type: str) -> None:
        self.webhook_events_total.labels(event_type=event_type).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()


# Context managers for automatic metric recording
class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/api/wallet", "GET") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        import time

        self.start_time = time.time()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        import time

        duration = time.time() - self.start_time
        if exc_type is not None:
            self.status_code = 500  # Default to 500 on exception
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.

    Usage:
        from prometheus_client import generate_latest
        return get_metrics_handler()
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
