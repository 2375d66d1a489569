"""
Alert Rule Generator for Prometheus AlertManager

Generates alert rule definitions for inventory reconciliation monitoring.
Rules cover run health, notification success rate, remediation failures
and query cost.
"""

import logging
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)


class AlertRuleGenerator:
    """Generates Prometheus AlertManager alert rules."""

    def __init__(self, warning_threshold: float = 95.0, critical_threshold: float = 80.0):
        """
        Initialize alert rule generator.

        Args:
            warning_threshold: Success rate (%) below which a warning fires
            critical_threshold: Success rate (%) below which a critical alert fires
        """
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        logger.info("AlertRuleGenerator initialized")

    def generate_alert_rules(self) -> Dict[str, Any]:
        """
        Generate complete alert rule configuration.

        Returns:
            Dict with alert rule groups in Prometheus format
        """
        groups = [
            self._generate_run_alerts(),
            self._generate_detection_alerts(),
            self._generate_remediation_alerts(),
        ]

        config = {
            "groups": groups
        }

        logger.info(f"Generated {len(groups)} alert rule groups")
        return config

    def _generate_run_alerts(self) -> Dict[str, Any]:
        """Generate run health alerts."""
        return {
            "name": "inventory_reconciliation_runs",
            "interval": "1m",
            "rules": [
                {
                    "alert": "ReconciliationRunFailures",
                    "expr": "increase(inventory_reconciliation_runs_total{status=~\"failed|timeout\"}[30m]) > 0",
                    "for": "5m",
                    "labels": {
                        "severity": "warning",
                        "component": "scheduler"
                    },
                    "annotations": {
                        "summary": "Reconciliation runs failing",
                        "description": "The {{ $labels.cadence }} cadence had {{ $value }} failed or timed out runs in 30m"
                    }
                },
                {
                    "alert": "ReconciliationStalled",
                    "expr": "time() - inventory_reconciliation_last_run_timestamp_seconds{cadence=\"realtime\"} > 600",
                    "for": "5m",
                    "labels": {
                        "severity": "critical",
                        "component": "scheduler"
                    },
                    "annotations": {
                        "summary": "Realtime reconciliation stalled",
                        "description": "No realtime run finished for {{ $value }}s"
                    }
                },
                {
                    "alert": "QueryBudgetExceeded",
                    "expr": "increase(inventory_reconciliation_budget_exceeded_total[1h]) > 3",
                    "for": "10m",
                    "labels": {
                        "severity": "warning",
                        "component": "database"
                    },
                    "annotations": {
                        "summary": "Reconciliation queries over budget",
                        "description": "The {{ $labels.cadence }} cadence exceeded its query budget {{ $value }} times in 1h. Review indexes or cadence."
                    }
                }
            ]
        }

    def _generate_detection_alerts(self) -> Dict[str, Any]:
        """Generate notification gap alerts."""
        return {
            "name": "inventory_reconciliation_detection",
            "interval": "1m",
            "rules": [
                {
                    "alert": "ChannelNotificationGaps",
                    "expr": f"inventory_reconciliation_success_rate < {self.warning_threshold:g}",
                    "for": "10m",
                    "labels": {
                        "severity": "warning",
                        "component": "detection"
                    },
                    "annotations": {
                        "summary": "Missing channel stock notifications",
                        "description": f"Notification success rate for {{{{ $labels.cadence }}}} is {{{{ $value }}}}% (below {self.warning_threshold:g}% threshold)"
                    }
                },
                {
                    "alert": "CriticalChannelNotificationGaps",
                    "expr": f"inventory_reconciliation_success_rate < {self.critical_threshold:g}",
                    "for": "5m",
                    "labels": {
                        "severity": "critical",
                        "component": "detection"
                    },
                    "annotations": {
                        "summary": "Channel notifications failing",
                        "description": f"Notification success rate for {{{{ $labels.cadence }}}} is {{{{ $value }}}}% (below {self.critical_threshold:g}% threshold). Check the change trigger path."
                    }
                },
                {
                    "alert": "UnresolvedReservationDeletes",
                    "expr": "increase(inventory_reconciliation_deletions_total{resolution=\"unresolved\"}[1h]) > 0",
                    "for": "1m",
                    "labels": {
                        "severity": "warning",
                        "component": "correlation"
                    },
                    "annotations": {
                        "summary": "Reservation deletes need manual review",
                        "description": "{{ $value }} reservation deletes in 1h had no correlated detail deletes"
                    }
                },
                {
                    "alert": "HighDiscardRate",
                    "expr": "rate(inventory_reconciliation_discards_total[15m]) > 1",
                    "for": "15m",
                    "labels": {
                        "severity": "info",
                        "component": "canonicalizer"
                    },
                    "annotations": {
                        "summary": "Audit log rows being discarded",
                        "description": "Discard rate for reason {{ $labels.reason }} is {{ $value }} rows/sec"
                    }
                }
            ]
        }

    def _generate_remediation_alerts(self) -> Dict[str, Any]:
        """Generate remediation dispatch alerts."""
        return {
            "name": "inventory_remediation",
            "interval": "30s",
            "rules": [
                {
                    "alert": "RemediationPermanentFailure",
                    "expr": "increase(inventory_remediation_permanent_failures_total[15m]) > 0",
                    "for": "1m",
                    "labels": {
                        "severity": "critical",
                        "component": "dispatcher"
                    },
                    "annotations": {
                        "summary": "Inventory remediation failed permanently",
                        "description": "{{ $value }} remediation groups exhausted their retries in 15m. Replay from the outcome log."
                    }
                },
                {
                    "alert": "HighRemediationRetryRate",
                    "expr": "rate(inventory_remediation_attempts_total{result=\"transient_failure\"}[10m]) > 0.1",
                    "for": "10m",
                    "labels": {
                        "severity": "warning",
                        "component": "dispatcher"
                    },
                    "annotations": {
                        "summary": "Site controller returning transient errors",
                        "description": "Transient remediation failures at {{ $value }}/sec"
                    }
                }
            ]
        }

    def export_to_yaml(self, output_file: str) -> None:
        """
        Export alert rules to YAML file.

        Args:
            output_file: Path to output YAML file
        """
        rules = self.generate_alert_rules()

        with open(output_file, 'w') as f:
            yaml.dump(rules, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Alert rules exported to {output_file}")

    def get_alert_summary(self) -> Dict[str, int]:
        """
        Get summary of alert rules.

        Returns:
            Dict with counts by severity
        """
        rules = self.generate_alert_rules()

        summary = {
            "total_groups": len(rules["groups"]),
            "total_alerts": 0,
            "critical": 0,
            "warning": 0,
            "info": 0
        }

        for group in rules["groups"]:
            for rule in group["rules"]:
                summary["total_alerts"] += 1
                severity = rule["labels"].get("severity", "unknown")
                if severity in summary:
                    summary[severity] += 1

        return summary
