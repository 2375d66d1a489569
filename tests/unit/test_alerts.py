"""
Unit tests for alert rule generation.
"""

import pytest
import yaml

from src.monitoring.alerts import AlertRuleGenerator


class TestAlertRuleGenerator:
    """Test suite for AlertRuleGenerator."""

    @pytest.fixture
    def generator(self):
        return AlertRuleGenerator()

    def _rules(self, generator):
        return {
            rule["alert"]: rule
            for group in generator.generate_alert_rules()["groups"]
            for rule in group["rules"]
        }

    def test_groups(self, generator):
        """Test the three rule groups."""
        names = [g["name"] for g in generator.generate_alert_rules()["groups"]]

        assert names == [
            "inventory_reconciliation_runs",
            "inventory_reconciliation_detection",
            "inventory_remediation",
        ]

    def test_all_rules_have_severity_and_expr(self, generator):
        for rule in self._rules(generator).values():
            assert rule["expr"]
            assert rule["labels"]["severity"] in ("critical", "warning", "info")
            assert rule["annotations"]["summary"]

    def test_thresholds_in_expressions(self):
        """Test that configured thresholds flow into the success-rate rules."""
        rules = self._rules(AlertRuleGenerator(warning_threshold=98, critical_threshold=90))

        assert rules["ChannelNotificationGaps"]["expr"] == "inventory_reconciliation_success_rate < 98"
        assert rules["CriticalChannelNotificationGaps"]["expr"] == "inventory_reconciliation_success_rate < 90"

    def test_permanent_failure_is_critical(self, generator):
        rule = self._rules(generator)["RemediationPermanentFailure"]

        assert rule["labels"]["severity"] == "critical"
        assert "inventory_remediation_permanent_failures_total" in rule["expr"]

    def test_summary(self, generator):
        """Test counts by severity."""
        assert generator.get_alert_summary() == {
            "total_groups": 3,
            "total_alerts": 9,
            "critical": 3,
            "warning": 5,
            "info": 1,
        }

    def test_export_to_yaml(self, generator, tmp_path):
        """Test YAML export round-trips through a Prometheus rules file."""
        output = tmp_path / "rules.yml"

        generator.export_to_yaml(str(output))

        with open(output) as f:
            loaded = yaml.safe_load(f)
        assert loaded == generator.generate_alert_rules()
