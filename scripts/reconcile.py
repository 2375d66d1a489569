#!/usr/bin/env python3
"""
Inventory Reconciliation Tool for the hotel PMS channel feed

Finds reservation changes that never produced a channel stock dispatch and
repairs the channel's inventory with idempotent recompute calls, with
support for:
- Scheduled cadences (realtime, hourly, daily, weekly) with run locks
- Ad hoc windows
- Dry-run mode (outcomes recorded, no calls made)
- Replay of permanently failed remediation groups
- Status, cost assessment and Prometheus alert rules

Usage:
    ./scripts/reconcile.py run --cadence hourly
    ./scripts/reconcile.py run --since 2025-01-16T11:00 --until 2025-01-16T12:00 --dry-run
    ./scripts/reconcile.py serve
    ./scripts/reconcile.py status
    ./scripts/reconcile.py replay --since 2025-01-16T00:00
    ./scripts/reconcile.py assess --query-ms 350
    ./scripts/reconcile.py alert-rules --output reconciliation-rules.yml
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.monitoring import AlertNotifier, AlertRuleGenerator, MetricsCollector
from src.monitoring.metrics import get_metrics_collector
from src.reconciliation import (
    Canonicalizer,
    CascadeCorrelator,
    CostModel,
    DispatchGapDetector,
    ReconciliationMonitor,
    ReconciliationPipeline,
    ReconciliationScheduler,
    RemediationDispatcher,
    RemediationGrouper,
)
from src.reconciliation.dispatcher import group_from_failure
from src.reconciliation.errors import ConfigurationError
from src.reconciliation.repository import connect_repository
from src.reconciliation.scheduler import build_cadences
from src.utils.config import PipelineConfig, load_config
from src.utils.correlation import CorrelationContext
from src.utils.logging_setup import configure_logging
from src.utils.vault_client import VaultClient

logger = logging.getLogger("reconcile")


class ReconciliationTool:
    """Wires the pipeline from configuration and runs CLI commands."""

    def __init__(self, config: PipelineConfig, dry_run: bool = False, vault: Optional[VaultClient] = None):
        """
        Initialize the tool.

        Args:
            config: Pipeline configuration
            dry_run: Record outcomes without calling the site controller
            vault: Vault client the configuration was loaded from, if any
        """
        self.config = config
        self.dry_run = dry_run or config.dry_run
        self.cadences = build_cadences(config.cadences)
        self.tz = ZoneInfo(config.timezone)
        self.vault = vault
        self._repository = None
        self._metrics = None

    @property
    def repository(self):
        if self._repository is None:
            db = self.config.database
            self._repository = connect_repository(
                host=db.host,
                port=db.port,
                database=db.name,
                user=db.user,
                password=db.password,
                statement_timeout_ms=db.statement_timeout_ms,
                max_connections=max(db.max_connections, self.config.max_workers + 1)
            )
        return self._repository

    @property
    def metrics(self) -> Optional[MetricsCollector]:
        if self._metrics is None and self.config.metrics.enabled:
            self._metrics = get_metrics_collector(
                port=self.config.metrics.port,
                pushgateway_url=self.config.metrics.pushgateway_url
            )
        return self._metrics

    def build_notifier(self) -> AlertNotifier:
        alerts = self.config.alerts
        return AlertNotifier(
            webhook_url=alerts.webhook_url,
            warning_threshold=alerts.warning_threshold,
            critical_threshold=alerts.critical_threshold
        )

    def build_dispatcher(self, notifier: AlertNotifier) -> RemediationDispatcher:
        channel = self.config.channel
        if not channel.base_url:
            raise ConfigurationError(
                "channel.base_url is required for remediation (set RECON_CHANNEL_BASE_URL)"
            )
        return RemediationDispatcher(
            base_url=channel.base_url,
            outcome_repository=self.repository,
            timeout=channel.request_timeout,
            max_attempts=channel.max_attempts,
            backoff_min=channel.backoff_min,
            backoff_max=channel.backoff_max,
            max_workers=self.config.max_workers,
            api_token=channel.api_token,
            notifier=notifier,
            metrics=self.metrics,
            dry_run=self.dry_run
        )

    def build_monitor(self, detect_only: bool = False) -> ReconciliationMonitor:
        windows = self.config.windows
        repository = self.repository
        repository.ensure_schema()

        notifier = self.build_notifier()
        canonicalizer = Canonicalizer()
        pipeline = ReconciliationPipeline(
            change_log=repository,
            gap_detector=DispatchGapDetector(
                repository,
                service_name_pattern=self.config.channel.service_name_pattern,
                window=timedelta(minutes=windows.dispatch_minutes),
                silent_skip_lookback=timedelta(minutes=windows.silent_skip_lookback_minutes),
                silent_skip_lookahead=timedelta(minutes=windows.silent_skip_lookahead_minutes)
            ),
            outcome_repository=repository,
            dispatcher=None if detect_only else self.build_dispatcher(notifier),
            canonicalizer=canonicalizer,
            correlator=CascadeCorrelator(
                repository,
                canonicalizer,
                window=timedelta(minutes=windows.correlation_minutes)
            ),
            max_workers=self.config.max_workers,
            skip_past_stays=self.config.skip_past_stays,
            warning_threshold=self.config.alerts.warning_threshold,
            critical_threshold=self.config.alerts.critical_threshold,
            today=lambda: datetime.now(self.tz).date()
        )

        return ReconciliationMonitor(
            pipeline,
            lock_repository=repository,
            run_log=repository,
            metrics=self.metrics,
            notifier=notifier,
            run_timeout=self.config.run_timeout_seconds
        )

    def run_cadence(self, name: str, detect_only: bool = False):
        """Run one window of a cadence ending now."""
        if name not in self.cadences:
            raise ConfigurationError(f"Unknown cadence '{name}'. Known: {', '.join(self.cadences)}")

        monitor = self.build_monitor(detect_only)
        report = monitor.run_cadence(self.cadences[name], datetime.now(self.tz))
        self._push_metrics()
        return report

    def run_window(self, since: datetime, until: datetime, detect_only: bool = False):
        """Run an ad hoc window."""
        monitor = self.build_monitor(detect_only)
        report = monitor.run_window(since, until)
        self._push_metrics()
        return report

    def serve(self) -> int:
        """Start the scheduler and block until SIGINT/SIGTERM."""
        monitor = self.build_monitor()
        if self.metrics is not None:
            self.metrics.start_server()

        scheduler = ReconciliationScheduler(monitor, self.cadences, timezone=self.config.timezone)
        stop = threading.Event()

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            stop.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        scheduler.start()
        try:
            stop.wait()
        finally:
            scheduler.stop()
            self.close()
        return 0

    def replay(self, since: datetime) -> Dict[str, Any]:
        """
        Re-dispatch permanently failed groups recorded since `since`.

        Returns:
            Replay summary
        """
        repository = self.repository
        repository.ensure_schema()
        failures = repository.find_permanent_failures(since)

        groups = RemediationGrouper().merge_groups(group_from_failure(record) for record in failures)
        run_id = f"replay-{uuid.uuid4()}"

        with CorrelationContext(run_id):
            logger.info(f"Replaying {len(failures)} failed outcomes as {len(groups)} groups")
            result = self.build_dispatcher(self.build_notifier()).dispatch_all(
                groups,
                run_id=run_id,
                timeout=self.config.run_timeout_seconds
            )

        self._push_metrics()
        return {
            "run_id": run_id,
            "since": since.isoformat(),
            "failed_outcomes": len(failures),
            "groups": [group.to_dict() for group in groups],
            "result": result.to_dict(),
        }

    def get_status(self) -> Dict[str, Any]:
        """Return held locks, recent runs, outstanding permanent failures and Vault health."""
        repository = self.repository
        repository.ensure_schema()
        since = datetime.now(self.tz) - timedelta(days=7)

        status = {
            "cadences": [cadence.to_dict() for cadence in self.cadences.values()],
            "locks": repository.list_locks(),
            "recent_runs": repository.recent_runs(limit=20),
            "permanent_failures": repository.find_permanent_failures(since),
            "vault": self.vault.health_check().to_dict() if self.vault is not None else None,
        }
        return status

    def assess(self, query_ms: float) -> Dict[str, Any]:
        return CostModel(self.cadences).assess(query_ms)

    def export_alert_rules(self, output: str) -> Dict[str, Any]:
        generator = AlertRuleGenerator(
            warning_threshold=self.config.alerts.warning_threshold,
            critical_threshold=self.config.alerts.critical_threshold
        )
        generator.export_to_yaml(output)
        return {"output": output, **generator.get_alert_summary()}

    def close(self) -> None:
        if self._repository is not None:
            self._repository.close()
            self._repository = None
        if self.vault is not None:
            self.vault.close()
            self.vault = None

    def _push_metrics(self) -> None:
        if self.metrics is not None:
            self.metrics.push()

    def parse_time(self, value: str) -> datetime:
        """Parse an ISO timestamp; naive values are taken in the configured timezone."""
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid timestamp '{value}': {e}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.tz)
        return parsed


def build_vault() -> Optional[VaultClient]:
    """Connect to Vault when VAULT_ADDR and VAULT_TOKEN are set."""
    if not (os.getenv("VAULT_ADDR") and os.getenv("VAULT_TOKEN")):
        return None
    return VaultClient()


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Inventory Reconciliation Tool for the PMS channel feed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--dry-run", action="store_true", help="Record outcomes without calling the channel")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run one reconciliation window")
    run_parser.add_argument("--cadence", help="Cadence whose window ends now")
    run_parser.add_argument("--since", help="Ad hoc window start (ISO 8601)")
    run_parser.add_argument("--until", help="Ad hoc window end (ISO 8601, default now)")
    run_parser.add_argument("--detect-only", action="store_true", help="Detect gaps without remediation")

    # Serve command
    subparsers.add_parser("serve", help="Run all cadences on a schedule")

    # Status command
    subparsers.add_parser("status", help="Show locks, recent runs and failures")

    # Replay command
    replay_parser = subparsers.add_parser("replay", help="Re-dispatch permanently failed groups")
    replay_parser.add_argument("--since", required=True, help="Replay failures since (ISO 8601)")

    # Assess command
    assess_parser = subparsers.add_parser("assess", help="Classify a query cost and recommend a cadence")
    assess_parser.add_argument("--query-ms", type=float, required=True, help="Observed query cost in ms")

    # Alert rules command
    rules_parser = subparsers.add_parser("alert-rules", help="Export Prometheus alert rules")
    rules_parser.add_argument("--output", required=True, help="Output YAML file")

    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    tool = None
    try:
        vault = build_vault()
        config = load_config(args.config, vault=vault)
        tool = ReconciliationTool(config, dry_run=args.dry_run, vault=vault)

        if args.command == "run":
            if args.cadence and args.since:
                parser.error("use either --cadence or --since/--until")
            if args.cadence:
                report = tool.run_cadence(args.cadence, detect_only=args.detect_only)
            elif args.since:
                since = tool.parse_time(args.since)
                until = tool.parse_time(args.until) if args.until else datetime.now(tool.tz)
                report = tool.run_window(since, until, detect_only=args.detect_only)
            else:
                parser.error("run needs --cadence or --since")
            print(json.dumps(report.to_dict(), indent=2, default=str))
            return 0 if report.is_healthy else 1

        elif args.command == "serve":
            return tool.serve()

        elif args.command == "status":
            print(json.dumps(tool.get_status(), indent=2, default=str))

        elif args.command == "replay":
            summary = tool.replay(tool.parse_time(args.since))
            print(json.dumps(summary, indent=2, default=str))
            return 0 if summary["result"]["failed"] == 0 else 1

        elif args.command == "assess":
            print(json.dumps(tool.assess(args.query_ms), indent=2))

        elif args.command == "alert-rules":
            print(json.dumps(tool.export_alert_rules(args.output), indent=2))

        return 0

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return 1

    finally:
        if tool is not None:
            tool.close()


if __name__ == "__main__":
    sys.exit(main())
