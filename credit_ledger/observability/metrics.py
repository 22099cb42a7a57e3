"""
Metrics Collection with Prometheus.

Exposes ledger, provider and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from credit_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    REASON = "reason"
    EVENT = "event"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the credit ledger.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Purchases (granted, duplicate, rejected)
    - Operations (outcome, duration) and compensations
    - Webhook notifications
    - Reaper sweeps and acknowledge retries
    - Push fan-out and the shared token cache
    """

    def __init__(self) -> None:
        self.service_info = Info(
            "ledger_service",
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchases_total = Counter(
            "ledger_purchases_total",
            "Purchase verifications by outcome",
            [MetricLabels.OUTCOME],
        )

        self.purchase_credits = Histogram(
            "ledger_purchase_credits",
            "Credits granted per purchase (base + bonus)",
            buckets=(10, 25, 50, 100, 250, 500, 1000),
        )

        self.ack_attempts_total = Counter(
            "ledger_ack_attempts_total",
            "Acknowledge/consume attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.ack_exhausted_total = Counter(
            "ledger_ack_exhausted_total",
            "Purchases whose acknowledge retries were exhausted",
        )

        # ====================================================================
        # Operation Metrics
        # ====================================================================
        self.operations_total = Counter(
            "ledger_operations_total",
            "Metered operations by outcome",
            [MetricLabels.OUTCOME],
        )

        self.operation_duration_seconds = Histogram(
            "ledger_operation_duration_seconds",
            "External operation duration in seconds",
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        self.compensations_total = Counter(
            "ledger_compensations_total",
            "Debit compensations by reason",
            [MetricLabels.REASON],
        )

        # ====================================================================
        # Webhook / Reaper Metrics
        # ====================================================================
        self.webhook_notifications_total = Counter(
            "ledger_webhook_notifications_total",
            "Provider notifications by outcome",
            [MetricLabels.OUTCOME],
        )

        self.reaper_rows_total = Counter(
            "ledger_reaper_rows_total",
            "Rows handled by the reaper by sweep",
            [MetricLabels.OPERATION],
        )

        self.reaper_last_run_timestamp = Gauge(
            "ledger_reaper_last_run_timestamp_seconds",
            "Unix time of the last completed reaper pass",
        )

        # ====================================================================
        # Push / Token Metrics
        # ====================================================================
        self.push_sends_total = Counter(
            "ledger_push_sends_total",
            "Push sends by event and outcome",
            [MetricLabels.EVENT, MetricLabels.OUTCOME],
        )

        self.token_cache_total = Counter(
            "ledger_token_cache_total",
            "Shared token cache lookups by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Database / Error Metrics
        # ====================================================================
        self.db_write_verifications_total = Counter(
            "ledger_db_write_verifications_total",
            "Conditional write checks",
            ["success"],
        )

        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_purchase(self, outcome: str, credits: int = 0) -> None:
        """Record a purchase verification outcome."""
        self.purchases_total.labels(outcome=outcome).inc()
        if outcome == "granted":
            self.purchase_credits.observe(credits)

    def record_ack(self, success: bool) -> None:
        self.ack_attempts_total.labels(outcome="success" if success else "failure").inc()

    def record_operation(self, outcome: str, duration: float | None = None) -> None:
        """Record a saga outcome (completed, refunded, insufficient, replayed, processing)."""
        self.operations_total.labels(outcome=outcome).inc()
        if duration is not None:
            self.operation_duration_seconds.observe(duration)

    def record_compensation(self, reason: str) -> None:
        self.compensations_total.labels(reason=reason).inc()

    def record_webhook(self, outcome: str) -> None:
        self.webhook_notifications_total.labels(outcome=outcome).inc()

    def record_reaper(self, sweep: str, count: int) -> None:
        if count:
            self.reaper_rows_total.labels(operation=sweep).inc(count)

    def record_push(self, event: str, outcome: str) -> None:
        self.push_sends_total.labels(event=event, outcome=outcome).inc()

    def record_token_cache(self, hit: bool) -> None:
        self.token_cache_total.labels(outcome="hit" if hit else "miss").inc()

    def record_write_verification(self, success: bool) -> None:
        self.db_write_verifications_total.labels(success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
