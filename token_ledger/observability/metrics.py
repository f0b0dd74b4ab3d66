"""
Metrics Collection with Prometheus.

Exposes ledger, reconciliation and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from token_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TIER = "tier"
    POOL = "pool"
    SOURCE = "source"
    STATE = "state"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the token ledger service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Ledger debits and credits (tokens by tier, pool and source)
    - Usage shortfalls
    - Reconciliation outcomes and webhook deliveries
    - Gateway and model provider calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "token_ledger_service",
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
            "token_ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "token_ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "token_ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.tokens_debited_total = Counter(
            "token_ledger_tokens_debited_total",
            "Tokens debited by usage tier and pool drawn",
            [MetricLabels.TIER, MetricLabels.POOL],
        )

        self.tokens_credited_total = Counter(
            "token_ledger_tokens_credited_total",
            "Tokens credited by source",
            [MetricLabels.SOURCE],
        )

        self.debit_shortfalls_total = Counter(
            "token_ledger_debit_shortfalls_total",
            "Debits that could not be fully covered",
            [MetricLabels.TIER],
        )

        self.accounts_created_total = Counter(
            "token_ledger_accounts_created_total",
            "Total accounts created",
        )

        self.db_write_verifications_total = Counter(
            "token_ledger_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "token_ledger_reconciliations_total",
            "Reconciliation attempts by channel and terminal state",
            ["channel", MetricLabels.STATE],
        )

        self.webhook_events_total = Counter(
            "token_ledger_webhook_events_total",
            "Webhook deliveries by event type and handling",
            [MetricLabels.EVENT_TYPE, "handling"],
        )

        # ====================================================================
        # Upstream Call Metrics
        # ====================================================================
        self.gateway_call_duration_seconds = Histogram(
            "token_ledger_gateway_call_duration_seconds",
            "Payment gateway call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.gateway_errors_total = Counter(
            "token_ledger_gateway_errors_total",
            "Payment gateway call failures",
            [MetricLabels.OPERATION, MetricLabels.ERROR_TYPE],
        )

        self.provider_calls_total = Counter(
            "token_ledger_provider_calls_total",
            "Model provider calls by tier and outcome",
            [MetricLabels.TIER, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "token_ledger_errors_total",
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

    def record_debit(self, tier: str, draws: dict[str, int], shortfall: int) -> None:
        """Record tokens drawn per pool and any shortfall."""
        for pool, amount in draws.items():
            self.tokens_debited_total.labels(tier=tier, pool=pool).inc(amount)
        if shortfall > 0:
            self.debit_shortfalls_total.labels(tier=tier).inc()

    def record_credit(self, source: str, amount: int) -> None:
        """Record tokens credited."""
        self.tokens_credited_total.labels(source=source).inc(amount)

    def record_reconciliation(self, channel: str, state: str) -> None:
        """Record a reconciliation outcome."""
        self.reconciliations_total.labels(channel=channel, state=state).inc()

    def record_webhook(self, event_type: str, handling: str) -> None:
        """Record a webhook delivery."""
        self.webhook_events_total.labels(event_type=event_type, handling=handling).inc()

    def record_gateway_call(
        self, operation: str, duration: float, error_type: str | None = None
    ) -> None:
        """Record a payment gateway call."""
        self.gateway_call_duration_seconds.labels(operation=operation).observe(duration)
        if error_type is not None:
            self.gateway_errors_total.labels(operation=operation, error_type=error_type).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
