"""
Monitoring Module for the Inventory Reconciliation Pipeline

This module provides observability components for the pipeline, including:
- Custom Prometheus metrics
- Alert rule definitions
- The operator alert channel

Usage:
    from src.monitoring import MetricsCollector, AlertRuleGenerator, AlertNotifier

    metrics = MetricsCollector()
    metrics.record_run(report)

    AlertRuleGenerator().export_to_yaml("reconciliation-rules.yml")

    AlertNotifier(webhook_url="https://hooks.example.com/recon").handle_run_report(report)
"""

from src.monitoring.alerts import AlertRuleGenerator
from src.monitoring.metrics import MetricsCollector, ReconciliationMetrics
from src.monitoring.notifier import AlertLevel, AlertNotifier, Health

__all__ = [
    "MetricsCollector",
    "ReconciliationMetrics",
    "AlertRuleGenerator",
    "AlertNotifier",
    "AlertLevel",
    "Health",
]

__version__ = "1.0.0"
