"""
Metrics Collection with Prometheus.

Exposes settlement, inventory and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from slotledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ACCOUNT_TYPE = "account_type"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the slot ledger.

    Covers:
    - HTTP requests (rate, duration)
    - Settlements (rate, outcome, amounts, compensations)
    - Allocations and releases
    - Stock synchronization
    - Credential resolution outcomes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "slotledger_service",
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
            "slotledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "slotledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "slotledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Settlement Metrics
        # ====================================================================
        self.settlements_total = Counter(
            "slotledger_settlements_total",
            "Settlement operations by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.settlement_amount = Histogram(
            "slotledger_settlement_amount",
            "Settled amounts in currency units",
            [MetricLabels.OPERATION],
            buckets=(1, 2.5, 5, 10, 15, 25, 50, 100, 250),
        )

        self.compensations_total = Counter(
            "slotledger_compensations_total",
            "Compensated saga steps by outcome",
            ["step", MetricLabels.OUTCOME],
        )

        self.reconciliation_required_total = Counter(
            "slotledger_reconciliation_required_total",
            "Settlements left inconsistent after a failed compensation",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Inventory Metrics
        # ====================================================================
        self.allocations_total = Counter(
            "slotledger_allocations_total",
            "Allocation attempts by outcome",
            [MetricLabels.ACCOUNT_TYPE, MetricLabels.OUTCOME],
        )

        self.releases_total = Counter(
            "slotledger_releases_total",
            "Release attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.stock_syncs_total = Counter(
            "slotledger_stock_syncs_total",
            "Stock synchronizations performed",
            [MetricLabels.ACCOUNT_TYPE],
        )

        self.resolutions_total = Counter(
            "slotledger_credential_resolutions_total",
            "Credential resolutions by strategy (miss when unresolved)",
            ["strategy"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "slotledger_errors_total",
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

    def record_settlement(self, operation: str, outcome: str, amount: float | None = None) -> None:
        """Record a settlement outcome (success, rejected, compensated, inconsistent)."""
        self.settlements_total.labels(operation=operation, outcome=outcome).inc()
        if outcome == "success" and amount is not None:
            self.settlement_amount.labels(operation=operation).observe(amount)

    def record_compensation(self, step: str, success: bool) -> None:
        """Record one compensation attempt."""
        self.compensations_total.labels(step=step, outcome="ok" if success else "failed").inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
