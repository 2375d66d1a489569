"""
Prometheus Metrics for the Inventory Reconciliation Pipeline

Custom metrics for reconciliation runs, detection results and remediation
dispatch. Exposed over HTTP while the scheduler is serving, or pushed to a
Pushgateway after ad hoc CLI runs.
"""

import logging
from typing import Any, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    push_to_gateway,
    start_http_server,
)

logger = logging.getLogger(__name__)


class ReconciliationMetrics:
    """Prometheus metrics for reconciliation runs and detection."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """
        Initialize reconciliation metrics.

        Args:
            registry: Registry the metrics are registered in
        """

        # Run counter
        self.runs_total = Counter(
            'inventory_reconciliation_runs_total',
            'Total number of reconciliation runs',
            ['cadence', 'status'],
            registry=registry
        )

        # Run duration
        self.run_duration_seconds = Histogram(
            'inventory_reconciliation_run_duration_seconds',
            'Duration of reconciliation runs in seconds',
            ['cadence'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 300],
            registry=registry
        )

        # Query cost, compared against the cadence budget
        self.query_duration_seconds = Histogram(
            'inventory_reconciliation_query_duration_seconds',
            'Time spent reading the audit log and dispatch queue',
            ['cadence'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
            registry=registry
        )

        self.budget_exceeded_total = Counter(
            'inventory_reconciliation_budget_exceeded_total',
            'Runs whose query cost exceeded the cadence budget',
            ['cadence'],
            registry=registry
        )

        # Rows processed
        self.rows_read_total = Counter(
            'inventory_reconciliation_rows_read_total',
            'Audit log rows read',
            ['cadence'],
            registry=registry
        )

        self.discards_total = Counter(
            'inventory_reconciliation_discards_total',
            'Audit log rows discarded by the canonicalizer',
            ['reason'],
            registry=registry
        )

        # Cascade correlation
        self.deletions_total = Counter(
            'inventory_reconciliation_deletions_total',
            'Parent deletes by correlation resolution',
            ['resolution'],
            registry=registry
        )

        # Detection
        self.missing_triggers_total = Counter(
            'inventory_reconciliation_missing_triggers_total',
            'Changes with no matching channel dispatch',
            ['cadence'],
            registry=registry
        )

        self.silent_skips_total = Counter(
            'inventory_reconciliation_silent_skips_total',
            'Missing triggers with no dispatch activity nearby',
            ['cadence'],
            registry=registry
        )

        self.groups_total = Counter(
            'inventory_reconciliation_groups_total',
            'Remediation groups produced',
            ['cadence'],
            registry=registry
        )

        # Success rate gauge
        self.success_rate = Gauge(
            'inventory_reconciliation_success_rate',
            'Share of relevant changes notified to the channel (0-100)',
            ['cadence'],
            registry=registry
        )

        self.last_run_timestamp = Gauge(
            'inventory_reconciliation_last_run_timestamp_seconds',
            'Unix time of the last finished run',
            ['cadence'],
            registry=registry
        )

        logger.info("ReconciliationMetrics initialized")

    def record_run(self, report: Any) -> None:
        """
        Record a finished run.

        Args:
            report: RunReport of the run
        """
        cadence = report.cadence

        self.runs_total.labels(cadence=cadence, status=report.status).inc()
        self.run_duration_seconds.labels(cadence=cadence).observe(report.duration_seconds)
        self.last_run_timestamp.labels(cadence=cadence).set(report.finished_at.timestamp())

        if report.query_ms is not None:
            self.query_duration_seconds.labels(cadence=cadence).observe(report.query_ms / 1000)
        if report.budget_exceeded:
            self.budget_exceeded_total.labels(cadence=cadence).inc()

        self.rows_read_total.labels(cadence=cadence).inc(report.rows_read)
        for reason, count in report.discards.items():
            self.discards_total.labels(reason=reason).inc(count)

        self.deletions_total.labels(resolution='unresolved').inc(len(report.unresolved))
        self.deletions_total.labels(resolution='partial').inc(report.partial_deletions)

        self.missing_triggers_total.labels(cadence=cadence).inc(report.missing_triggers)
        self.silent_skips_total.labels(cadence=cadence).inc(report.silent_skips)
        self.groups_total.labels(cadence=cadence).inc(report.groups)

        if report.success_rate is not None:
            self.success_rate.labels(cadence=cadence).set(report.success_rate)

        logger.debug(
            f"Recorded run metrics for {cadence}: status={report.status}, "
            f"duration={report.duration_seconds:.3f}s"
        )


class DispatchMetrics:
    """Prometheus metrics for remediation dispatch."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize dispatch metrics."""

        self.attempts_total = Counter(
            'inventory_remediation_attempts_total',
            'Remediation call attempts by result',
            ['result'],
            registry=registry
        )

        self.permanent_failures_total = Counter(
            'inventory_remediation_permanent_failures_total',
            'Remediation groups that exhausted their retries',
            registry=registry
        )

        logger.info("DispatchMetrics initialized")

    def record_attempt(self, result: str) -> None:
        """Record one remediation attempt."""
        self.attempts_total.labels(result=result).inc()

    def record_permanent_failure(self) -> None:
        """Record a group that failed permanently."""
        self.permanent_failures_total.inc()


class MetricsCollector:
    """
    Main metrics collector for the reconciliation pipeline.

    Combines all metric categories and provides a unified interface.
    """

    def __init__(
        self,
        port: int = 9090,
        registry: Optional[CollectorRegistry] = None,
        pushgateway_url: Optional[str] = None
    ):
        """
        Initialize metrics collector.

        Args:
            port: Port for Prometheus metrics server
            registry: Registry to use (the default global registry if None)
            pushgateway_url: Pushgateway address for ad hoc runs
        """
        self.port = port
        self.registry = registry if registry is not None else REGISTRY
        self.pushgateway_url = pushgateway_url
        self.reconciliation = ReconciliationMetrics(self.registry)
        self.dispatch = DispatchMetrics(self.registry)

        # System info
        self.pipeline_info = Info(
            'inventory_reconciliation_pipeline',
            'Inventory reconciliation pipeline information',
            registry=self.registry
        )
        self.pipeline_info.info({
            'version': '1.0.0',
            'source': 'logs_reservation',
            'channel': 'site-controller',
        })

        logger.info(f"MetricsCollector initialized on port {port}")

    def start_server(self) -> None:
        """Start Prometheus metrics HTTP server."""
        try:
            start_http_server(self.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.port}")
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Metrics server already running on port {self.port}")
            else:
                raise

    def push(self, job: str = "inventory_reconciliation") -> bool:
        """
        Push metrics to the configured Pushgateway.

        Returns:
            True if pushed, False if no gateway is configured or the push failed
        """
        if not self.pushgateway_url:
            return False

        try:
            push_to_gateway(self.pushgateway_url, job=job, registry=self.registry)
            logger.info(f"Pushed metrics to {self.pushgateway_url}")
            return True
        except OSError as e:
            logger.warning(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False

    def record_run(self, report: Any) -> None:
        """Record a finished run (delegates to ReconciliationMetrics)."""
        self.reconciliation.record_run(report)

    def record_dispatch_attempt(self, result: str) -> None:
        """Record a remediation attempt (delegates to DispatchMetrics)."""
        self.dispatch.record_attempt(result)

    def record_permanent_failure(self) -> None:
        """Record a permanent remediation failure (delegates to DispatchMetrics)."""
        self.dispatch.record_permanent_failure()


# Singleton instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(port: int = 9090, pushgateway_url: Optional[str] = None) -> MetricsCollector:
    """
    Get or create singleton metrics collector.

    Args:
        port: Port for metrics server
        pushgateway_url: Pushgateway address for ad hoc runs

    Returns:
        MetricsCollector instance
    """
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(port=port, pushgateway_url=pushgateway_url)

    return _metrics_collector
