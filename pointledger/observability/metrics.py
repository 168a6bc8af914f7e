"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from pointledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    KIND = "kind"
    SOURCE = "source"
    USAGE_TYPE = "usage_type"
    ERROR_TYPE = "error_type"


class PointsMetrics:
    """
    Centralized metrics for the points ledger.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Spends (rate, cost, failures)
    - Acquisitions (rate and amount by source and kind)
    - Reconciliation (corrections, integrity violations)
    - Migration and expiry sweep outcomes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "points_service",
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
            "points_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "points_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "points_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Spend Metrics
        # ====================================================================
        self.spends_total = Counter(
            "points_spends_total",
            "Total spend attempts",
            [MetricLabels.USAGE_TYPE, "success", MetricLabels.ERROR_TYPE],
        )

        self.spend_cost_points = Histogram(
            "points_spend_cost_points",
            "Points consumed per successful spend",
            buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
        )

        self.spend_duration_seconds = Histogram(
            "points_spend_duration_seconds",
            "Spend duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Acquisition Metrics
        # ====================================================================
        self.acquisitions_total = Counter(
            "points_acquisitions_total",
            "Total ledger acquisitions",
            [MetricLabels.SOURCE, MetricLabels.KIND, "success"],
        )

        self.acquired_points = Histogram(
            "points_acquired_points",
            "Points granted per acquisition",
            buckets=(10, 30, 50, 100, 250, 500, 1000, 5000, 10000),
        )

        # ====================================================================
        # Reconciliation / Maintenance Metrics
        # ====================================================================
        self.reconciliation_corrections_total = Counter(
            "points_reconciliation_corrections_total",
            "Cache corrections written by reconciliation",
            [MetricLabels.KIND, "direction"],
        )

        self.reconciliation_drift_points = Histogram(
            "points_reconciliation_drift_points",
            "Absolute drift between cache and ledger per correction",
            buckets=(1, 5, 10, 50, 100, 500, 1000, 10000),
        )

        self.ledger_integrity_violations_total = Counter(
            "points_ledger_integrity_violations_total",
            "Ledger entries found with balance outside [0, amount]",
        )

        self.migration_users_total = Counter(
            "points_migration_users_total",
            "Users processed by the ledger migration",
            ["success"],
        )

        self.expired_points_total = Counter(
            "points_expired_points_total",
            "Points removed by the expiry sweep",
            [MetricLabels.KIND],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "points_errors_total",
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

    def record_spend(
        self,
        usage_type: str,
        success: bool,
        cost: int,
        duration: float,
        error_type: str | None = None,
    ) -> None:
        """Record spend metrics."""
        self.spends_total.labels(
            usage_type=usage_type, success=str(success), error_type=error_type or "none"
        ).inc()
        if success and cost > 0:
            self.spend_cost_points.observe(cost)
        self.spend_duration_seconds.observe(duration)

    def record_acquisition(self, source: str, kind: str, success: bool, amount: int) -> None:
        """Record acquisition metrics."""
        self.acquisitions_total.labels(source=source, kind=kind, success=str(success)).inc()
        if success:
            self.acquired_points.observe(amount)

    def record_correction(self, kind: str, delta: int) -> None:
        """Record one reconciliation correction."""
        direction = "up" if delta > 0 else "down"
        self.reconciliation_corrections_total.labels(kind=kind, direction=direction).inc()
        self.reconciliation_drift_points.observe(abs(delta))

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PointsMetrics()
