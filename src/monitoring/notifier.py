"""
Operator Alert Channel for the Inventory Reconciliation Pipeline

Every alert is logged; when a webhook URL is configured it is also posted
as JSON. A failing webhook is logged and swallowed so alerting can never
fail a reconciliation run.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class AlertLevel(str, Enum):
    """Operator alert levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"


class Health(str, Enum):
    """Run health derived from the notification success rate."""
    HEALTHY = "healthy"
    MINOR = "minor"
    DEGRADED = "degraded"
    CRITICAL = "critical"


_LOG_LEVELS = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.CRITICAL: logging.CRITICAL,
    AlertLevel.ERROR: logging.ERROR,
}

_HEALTH_ALERT_LEVELS = {
    Health.HEALTHY: AlertLevel.INFO,
    Health.MINOR: AlertLevel.WARNING,
    Health.DEGRADED: AlertLevel.WARNING,
    Health.CRITICAL: AlertLevel.CRITICAL,
}

RECOMMENDATIONS = {
    Health.HEALTHY: "System operating normally; continue monitoring.",
    Health.MINOR: (
        "Minor issues detected; investigate the specific missing triggers "
        "and verify site controller connectivity."
    ),
    Health.DEGRADED: (
        "Degradation detected; check the application's change trigger path "
        "and database notifications, and consider a manual channel sync for "
        "the affected reservations."
    ),
    Health.CRITICAL: (
        "Major failure; immediate investigation required. Check that the "
        "application and database notification system are running; a manual "
        "channel sync is required for all affected reservations."
    ),
}


def classify_health(
    success_rate: float,
    warning_threshold: float = 95.0,
    critical_threshold: float = 80.0
) -> Health:
    """
    Classify a success rate into a health status.

    Args:
        success_rate: Notified share of candidates (0-100)
        warning_threshold: Lowest rate still counted as a minor issue
        critical_threshold: Lowest rate still counted as degraded

    Returns:
        Health status
    """
    if success_rate >= 100:
        return Health.HEALTHY
    if success_rate >= warning_threshold:
        return Health.MINOR
    if success_rate >= critical_threshold:
        return Health.DEGRADED
    return Health.CRITICAL


def recommendation_for(health: Health) -> str:
    return RECOMMENDATIONS[health]


class AlertNotifier:
    """Sends operator alerts to the log and an optional webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 5.0,
        warning_threshold: float = 95.0,
        critical_threshold: float = 80.0
    ):
        """
        Initialize the notifier.

        Args:
            webhook_url: URL receiving alert JSON (log-only if None)
            session: HTTP session for the webhook
            timeout: Webhook request timeout in seconds
            warning_threshold: Success rate (%) below which health is not healthy
            critical_threshold: Success rate (%) below which health is critical
        """
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

        logger.info(f"Initialized AlertNotifier (webhook={'on' if webhook_url else 'off'})")

    def send_alert(
        self,
        level: AlertLevel,
        title: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Log an alert and post it to the webhook.

        Args:
            level: Alert level
            title: Short alert title
            message: Alert body
            details: Extra JSON-serializable context

        Returns:
            True if the webhook accepted the alert
        """
        logger.log(_LOG_LEVELS[level], f"[{level.value}] {title}: {message}")

        if not self.webhook_url:
            return False

        payload = {
            "level": level.value,
            "title": title,
            "message": message,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Failed to deliver alert '{title}' to webhook: {e}")
            return False

    def notify_permanent_failure(self, group: Any, error: str, attempts: int) -> bool:
        """Alert on a remediation group that exhausted its retries."""
        return self.send_alert(
            AlertLevel.CRITICAL,
            "Inventory remediation failed",
            (
                f"Hotel {group.hotel_id} {group.check_in.isoformat()}..{group.check_out.isoformat()} "
                f"failed after {attempts} attempt(s): {error}"
            ),
            {**group.to_dict(), "error": error, "attempts": attempts}
        )

    def handle_run_report(self, report: Any) -> List[AlertLevel]:
        """
        Raise the alerts a finished run calls for.

        Args:
            report: RunReport of the run

        Returns:
            Levels of the alerts raised
        """
        raised = []

        def alert(level: AlertLevel, title: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
            raised.append(level)
            try:
                self.send_alert(level, title, message, details)
            except Exception as e:
                logger.error(f"Notifier failed for '{title}': {e}")

        context = {"run_id": report.run_id, "cadence": report.cadence}

        if report.status in ("failed", "timeout"):
            alert(
                AlertLevel.ERROR,
                f"Reconciliation run {report.status}",
                f"{report.cadence} run {report.run_id} {report.status}: {report.error}",
                context
            )
            return raised

        if report.success_rate is not None:
            health = classify_health(report.success_rate, self.warning_threshold, self.critical_threshold)
            if health != Health.HEALTHY:
                alert(
                    _HEALTH_ALERT_LEVELS[health],
                    f"Channel notification gaps ({health.value})",
                    (
                        f"Success rate {report.success_rate:.1f}%: {report.missing_triggers} missing of "
                        f"{report.candidates} candidates, {report.silent_skips} possible silent skips"
                    ),
                    {**context, "pattern": report.pattern, "recommendation": report.recommendation}
                )

        if report.unresolved:
            alert(
                AlertLevel.WARNING,
                "Reservation deletes need manual review",
                f"{len(report.unresolved)} reservation deletes had no correlated detail deletes",
                {**context, "unresolved": report.unresolved}
            )

        if report.budget_exceeded:
            alert(
                AlertLevel.WARNING,
                "Query budget exceeded",
                f"{report.cadence} query cost {report.query_ms:.0f} ms exceeded budget {report.budget_ms:.0f} ms",
                context
            )

        return raised
