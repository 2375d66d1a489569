"""
Unit tests for the operator alert channel.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import requests

from src.monitoring.notifier import (
    AlertLevel,
    AlertNotifier,
    Health,
    classify_health,
    recommendation_for,
)
from src.reconciliation.models import RemediationGroup
from src.reconciliation.pipeline import RunReport


@pytest.fixture
def session():
    session = Mock()
    session.post.return_value = Mock(status_code=200)
    return session


@pytest.fixture
def notifier(session):
    return AlertNotifier(webhook_url="https://hooks.example.com/recon", session=session)


@pytest.fixture
def report():
    now = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
    return RunReport(
        run_id="run-1",
        cadence="hourly",
        window_start=now - timedelta(hours=1),
        window_end=now,
        started_at=now,
        finished_at=now,
        status=RunReport.STATUS_SUCCESS,
        candidates=10,
        notified=10,
        success_rate=100.0,
        health="healthy",
    )


class TestClassifyHealth:
    """Test success-rate health classification."""

    @pytest.mark.parametrize("rate,health", [
        (100.0, Health.HEALTHY),
        (99.9, Health.MINOR),
        (95.0, Health.MINOR),
        (94.9, Health.DEGRADED),
        (80.0, Health.DEGRADED),
        (79.9, Health.CRITICAL),
        (0.0, Health.CRITICAL),
    ])
    def test_default_thresholds(self, rate, health):
        assert classify_health(rate) == health

    def test_custom_thresholds(self):
        assert classify_health(97.0, warning_threshold=98, critical_threshold=90) == Health.DEGRADED

    def test_every_health_has_a_recommendation(self):
        for health in Health:
            assert recommendation_for(health)


class TestAlertNotifier:
    """Test suite for AlertNotifier."""

    def test_send_alert_posts_json(self, notifier, session):
        """Test that alerts are posted to the webhook."""
        assert notifier.send_alert(AlertLevel.WARNING, "Title", "Body", {"run_id": "run-1"}) is True

        url = session.post.call_args[0][0]
        payload = session.post.call_args[1]["json"]
        assert url == "https://hooks.example.com/recon"
        assert payload["level"] == "WARNING"
        assert payload["title"] == "Title"
        assert payload["details"] == {"run_id": "run-1"}
        assert "timestamp" in payload

    def test_send_alert_without_webhook(self, session):
        """Test log-only mode."""
        notifier = AlertNotifier(session=session)

        assert notifier.send_alert(AlertLevel.INFO, "Title", "Body") is False
        session.post.assert_not_called()

    def test_webhook_failure_is_swallowed(self, notifier, session):
        """Test that an unreachable webhook never raises."""
        session.post.side_effect = requests.ConnectionError("refused")

        assert notifier.send_alert(AlertLevel.CRITICAL, "Title", "Body") is False

    def test_webhook_http_error(self, notifier, session):
        response = Mock()
        response.raise_for_status.side_effect = requests.HTTPError("500")
        session.post.return_value = response

        assert notifier.send_alert(AlertLevel.ERROR, "Title", "Body") is False

    def test_notify_permanent_failure(self, notifier, session):
        """Test the permanent failure alert content."""
        group = RemediationGroup(25, date(2024, 1, 21), date(2024, 1, 24), [])

        notifier.notify_permanent_failure(group, "HTTP 400: bad", 1)

        payload = session.post.call_args[1]["json"]
        assert payload["level"] == "CRITICAL"
        assert "Hotel 25 2024-01-21..2024-01-24" in payload["message"]
        assert payload["details"]["error"] == "HTTP 400: bad"
        assert payload["details"]["attempts"] == 1

    def test_healthy_report_raises_nothing(self, notifier, report, session):
        assert notifier.handle_run_report(report) == []
        session.post.assert_not_called()

    @pytest.mark.parametrize("rate,level", [
        (97.0, AlertLevel.WARNING),
        (85.0, AlertLevel.WARNING),
        (50.0, AlertLevel.CRITICAL),
    ])
    def test_gap_alert_levels(self, notifier, report, rate, level):
        """Test alert level per health band."""
        report.success_rate = rate

        assert notifier.handle_run_report(report) == [level]

    def test_failed_run_alerts_error_only(self, notifier, report, session):
        """Test that failed runs raise a single error alert."""
        report.status = RunReport.STATUS_TIMEOUT
        report.error = "Run timed out after correlate"
        report.success_rate = None
        report.unresolved = [{"log_id": 1}]

        assert notifier.handle_run_report(report) == [AlertLevel.ERROR]
        assert "timed out" in session.post.call_args[1]["json"]["message"]

    def test_unresolved_and_budget_alerts(self, notifier, report):
        """Test manual-review and budget alerts on an otherwise healthy run."""
        report.unresolved = [{"log_id": 6, "record_id": "901"}]
        report.budget_exceeded = True
        report.query_ms = 812.0
        report.budget_ms = 500.0

        assert notifier.handle_run_report(report) == [AlertLevel.WARNING, AlertLevel.WARNING]

    def test_send_errors_do_not_escape(self, report):
        """Test that an unexpected error while alerting is contained."""
        notifier = AlertNotifier()
        notifier.send_alert = Mock(side_effect=RuntimeError("boom"))
        report.success_rate = 10.0

        assert notifier.handle_run_report(report) == [AlertLevel.CRITICAL]
