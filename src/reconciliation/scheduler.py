"""
Reconciliation Scheduler and Monitor

Runs the pipeline at several cadences with APScheduler:

    realtime  last 5 minutes, every minute          budget 100 ms
    hourly    last 60 minutes, every 15 minutes     budget 500 ms
    daily     previous day, at 06:00                budget 2 s
    weekly    previous 7 days, Monday 07:00         budget 10 s

Each run holds a run lock for its cadence, executes inside a correlation
context and reports to metrics, the operator notifier and the run log.
"""

import logging
import socket
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.reconciliation.errors import ConfigurationError, RunLockedError
from src.reconciliation.pipeline import ReconciliationPipeline, RunReport
from src.reconciliation.repository import RunLockRepository, RunLogRepository
from src.utils.correlation import CorrelationContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cadence:
    """
    A reconciliation schedule.

    Either `interval` or `cron` must be set. With `align_to_day` the window
    ends at the most recent midnight instead of now, so daily and weekly
    runs cover whole days.
    """

    name: str
    lookback: timedelta
    budget_ms: float
    interval: Optional[timedelta] = None
    cron: Dict[str, Any] = field(default_factory=dict)
    align_to_day: bool = False

    def window(self, now: datetime) -> Tuple[datetime, datetime]:
        """Return the half-open window [since, until) for a run at `now`."""
        until = now
        if self.align_to_day:
            until = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return until - self.lookback, until

    @property
    def lock_key(self) -> str:
        return f"{self.name}:{int(self.lookback.total_seconds())}"

    def trigger(self, timezone: str):
        """Build the APScheduler trigger for this cadence."""
        if self.interval is not None:
            return IntervalTrigger(seconds=self.interval.total_seconds(), timezone=timezone)
        if self.cron:
            return CronTrigger(timezone=timezone, **self.cron)
        raise ConfigurationError(f"Cadence '{self.name}' needs an interval or a cron schedule")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "lookback_minutes": self.lookback.total_seconds() / 60,
            "budget_ms": self.budget_ms,
            "interval_minutes": self.interval.total_seconds() / 60 if self.interval else None,
            "cron": dict(self.cron),
            "align_to_day": self.align_to_day,
        }


DEFAULT_CADENCES: Dict[str, Cadence] = {
    "realtime": Cadence("realtime", timedelta(minutes=5), 100, interval=timedelta(minutes=1)),
    "hourly": Cadence("hourly", timedelta(minutes=60), 500, interval=timedelta(minutes=15)),
    "daily": Cadence("daily", timedelta(days=1), 2000, cron={"hour": 6, "minute": 0}, align_to_day=True),
    "weekly": Cadence(
        "weekly", timedelta(days=7), 10000,
        cron={"day_of_week": "mon", "hour": 7, "minute": 0},
        align_to_day=True
    ),
}


def build_cadences(overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> Dict[str, Cadence]:
    """
    Merge configured cadence overrides into the defaults.

    Override keys: lookback_minutes, interval_minutes, cron, budget_ms,
    align_to_day, enabled. New names define new cadences.

    Raises:
        ConfigurationError: If an override is invalid
    """
    cadences = dict(DEFAULT_CADENCES)

    for name, entry in (overrides or {}).items():
        if entry.get("enabled", True) is False:
            cadences.pop(name, None)
            continue

        base = cadences.get(name)
        try:
            lookback = (
                timedelta(minutes=float(entry["lookback_minutes"]))
                if "lookback_minutes" in entry else (base.lookback if base else None)
            )
            interval = (
                timedelta(minutes=float(entry["interval_minutes"]))
                if "interval_minutes" in entry else (base.interval if base and "cron" not in entry else None)
            )
            budget = float(entry.get("budget_ms", base.budget_ms if base else 0))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid cadence '{name}': {e}") from e

        cron = dict(entry.get("cron") or (base.cron if base and "interval_minutes" not in entry else {}))
        if lookback is None or lookback <= timedelta(0):
            raise ConfigurationError(f"Cadence '{name}' needs a positive lookback_minutes")
        if interval is None and not cron:
            raise ConfigurationError(f"Cadence '{name}' needs interval_minutes or cron")
        if budget <= 0:
            raise ConfigurationError(f"Cadence '{name}' needs a positive budget_ms")

        cadences[name] = Cadence(
            name=name,
            lookback=lookback,
            budget_ms=budget,
            interval=interval,
            cron=cron,
            align_to_day=bool(entry.get("align_to_day", base.align_to_day if base else False)),
        )

    return cadences


class CostModel:
    """Classifies observed query cost and recommends a cadence."""

    TIERS = (
        (100, "excellent"),
        (500, "good"),
        (2000, "moderate"),
    )

    def __init__(self, cadences: Optional[Mapping[str, Cadence]] = None):
        self.cadences = dict(cadences or DEFAULT_CADENCES)

    def tier(self, query_ms: float) -> str:
        for limit, name in self.TIERS:
            if query_ms < limit:
                return name
        return "expensive"

    def recommend_cadence(self, query_ms: float) -> Optional[str]:
        """Return the most frequent cadence whose budget fits `query_ms`, or None."""
        for cadence in sorted(self.cadences.values(), key=lambda c: c.budget_ms):
            if query_ms <= cadence.budget_ms:
                return cadence.name
        return None

    def assess(self, query_ms: float) -> Dict[str, Any]:
        """
        Assess a measured query cost.

        Args:
            query_ms: Observed query cost in milliseconds

        Returns:
            Dict with tier, recommended cadence and per-cadence fit
        """
        if query_ms < 0:
            raise ValueError("query_ms must be >= 0")

        recommended = self.recommend_cadence(query_ms)
        return {
            "query_ms": query_ms,
            "tier": self.tier(query_ms),
            "recommended_cadence": recommended,
            "fits": {name: query_ms <= c.budget_ms for name, c in self.cadences.items()},
            "advice": (
                f"Run at the '{recommended}' cadence"
                if recommended else
                "Query cost exceeds every cadence budget; review indexes or architecture"
            ),
        }


class ReconciliationMonitor:
    """
    Executes pipeline runs under a run lock and reports their outcome.

    Never raises from a run: lock contention, timeouts and errors all end
    up in the returned RunReport.
    """

    def __init__(
        self,
        pipeline: ReconciliationPipeline,
        lock_repository: RunLockRepository,
        run_log: Optional[RunLogRepository] = None,
        metrics: Optional[Any] = None,
        notifier: Optional[Any] = None,
        run_timeout: float = 300.0,
        owner: Optional[str] = None
    ):
        """
        Initialize the monitor.

        Args:
            pipeline: Reconciliation pipeline
            lock_repository: Run-lock storage
            run_log: Run history storage
            metrics: MetricsCollector
            notifier: AlertNotifier
            run_timeout: Wall-clock timeout per run; also the lock TTL
            owner: Lock owner name (hostname:uuid by default)
        """
        self.pipeline = pipeline
        self.lock_repository = lock_repository
        self.run_log = run_log
        self.metrics = metrics
        self.notifier = notifier
        self.run_timeout = run_timeout
        self.owner = owner or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"

        logger.info(f"Initialized ReconciliationMonitor (owner={self.owner}, timeout={run_timeout}s)")

    @contextmanager
    def run_lock(self, lock_key: str) -> Iterator[None]:
        """
        Hold the run lock for `lock_key`.

        Raises:
            RunLockedError: If another run holds the lock
        """
        if not self.lock_repository.acquire_lock(lock_key, self.owner, self.run_timeout):
            raise RunLockedError(lock_key)
        try:
            yield
        finally:
            try:
                self.lock_repository.release_lock(lock_key, self.owner)
            except Exception as e:
                # Lock expires after run_timeout
                logger.error(f"Failed to release run lock {lock_key}: {e}")

    def run_cadence(self, cadence: Cadence, now: Optional[datetime] = None) -> RunReport:
        """
        Run the window of `cadence` as of `now`.

        The window is shifted back by the pipeline's settle delay so every
        change in it already has a closed dispatch window.
        """
        now = now or datetime.now().astimezone()
        since, until = cadence.window(now - self.pipeline.settle_delay)
        return self.run_window(
            since,
            until,
            cadence=cadence.name,
            budget_ms=cadence.budget_ms,
            lock_key=cadence.lock_key
        )

    def run_window(
        self,
        since: datetime,
        until: datetime,
        cadence: str = "adhoc",
        budget_ms: Optional[float] = None,
        lock_key: Optional[str] = None
    ) -> RunReport:
        """
        Run an arbitrary window under a run lock.

        Args:
            since: Window start (inclusive)
            until: Window end (exclusive)
            cadence: Cadence name for reporting
            budget_ms: Query cost budget
            lock_key: Lock key (adhoc:since:until by default)

        Returns:
            RunReport
        """
        run_id = str(uuid.uuid4())
        lock_key = lock_key or f"adhoc:{since.isoformat()}:{until.isoformat()}"

        with CorrelationContext(run_id):
            try:
                with self.run_lock(lock_key):
                    report = self.pipeline.run(
                        since,
                        until,
                        cadence=cadence,
                        budget_ms=budget_ms,
                        timeout=self.run_timeout,
                        run_id=run_id
                    )
            except RunLockedError as e:
                logger.warning(f"Skipping {cadence} run: {e}")
                now = datetime.now().astimezone()
                report = RunReport(
                    run_id=run_id,
                    cadence=cadence,
                    window_start=since,
                    window_end=until,
                    started_at=now,
                    finished_at=now,
                    status=RunReport.STATUS_LOCKED,
                    error=str(e),
                    budget_ms=budget_ms,
                )
            except Exception as e:
                logger.exception(f"{cadence} run could not start: {e}")
                now = datetime.now().astimezone()
                report = RunReport(
                    run_id=run_id,
                    cadence=cadence,
                    window_start=since,
                    window_end=until,
                    started_at=now,
                    finished_at=now,
                    status=RunReport.STATUS_FAILED,
                    error=f"{type(e).__name__}: {e}",
                    budget_ms=budget_ms,
                )

            self._report(report)

        return report

    def _report(self, report: RunReport) -> None:
        if self.metrics is not None:
            try:
                self.metrics.record_run(report)
            except Exception as e:
                logger.error(f"Failed to record metrics for run {report.run_id}: {e}")

        if self.notifier is not None and report.status != RunReport.STATUS_LOCKED:
            try:
                self.notifier.handle_run_report(report)
            except Exception as e:
                logger.error(f"Failed to notify for run {report.run_id}: {e}")

        if self.run_log is not None:
            try:
                self.run_log.record_run(report.to_dict())
            except Exception as e:
                logger.error(f"Failed to write run log for {report.run_id}: {e}")


class ReconciliationScheduler:
    """Schedules one APScheduler job per cadence."""

    def __init__(
        self,
        monitor: ReconciliationMonitor,
        cadences: Optional[Mapping[str, Cadence]] = None,
        timezone: str = "Asia/Tokyo",
        scheduler: Optional[BackgroundScheduler] = None
    ):
        """
        Initialize the scheduler.

        Args:
            monitor: Run executor
            cadences: Cadences to schedule (defaults to all four)
            timezone: Timezone for cron triggers and windows
            scheduler: APScheduler instance (mainly for tests)
        """
        self.monitor = monitor
        self.cadences = dict(cadences or DEFAULT_CADENCES)
        self.timezone = timezone
        self.scheduler = scheduler or BackgroundScheduler(timezone=timezone)
        self.last_reports: Dict[str, RunReport] = {}

    def start(self) -> None:
        """Register all cadence jobs and start the scheduler."""
        if self.scheduler.running:
            logger.warning("Reconciliation scheduler is already running")
            return

        for cadence in self.cadences.values():
            self.scheduler.add_job(
                self._run_job,
                cadence.trigger(self.timezone),
                args=[cadence.name],
                id=f"reconcile_{cadence.name}",
                name=f"Reconciliation ({cadence.name})",
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self.scheduler.start()
        logger.info(f"Reconciliation scheduler started with cadences: {', '.join(self.cadences)}")

    def stop(self, wait: bool = True) -> None:
        """Stop the scheduler, waiting for running jobs by default."""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Reconciliation scheduler stopped")

    def run_now(self, name: str, now: Optional[datetime] = None) -> RunReport:
        """
        Run one cadence immediately.

        Raises:
            KeyError: If the cadence is unknown
        """
        if name not in self.cadences:
            raise KeyError(f"Unknown cadence '{name}'. Known: {', '.join(self.cadences)}")
        return self._run_job(name, now)

    def status(self) -> List[Dict[str, Any]]:
        """Return per-cadence job state and last report summary."""
        result = []
        for name, cadence in self.cadences.items():
            job = self.scheduler.get_job(f"reconcile_{name}") if self.scheduler.running else None
            next_run = getattr(job, "next_run_time", None) if job else None
            last = self.last_reports.get(name)
            result.append({
                **cadence.to_dict(),
                "next_run_time": next_run.isoformat() if next_run else None,
                "last_status": last.status if last else None,
                "last_success_rate": last.success_rate if last else None,
                "last_finished_at": last.finished_at.isoformat() if last and last.finished_at else None,
            })
        return result

    def _run_job(self, name: str, now: Optional[datetime] = None) -> Optional[RunReport]:
        cadence = self.cadences[name]
        now = now or datetime.now(ZoneInfo(self.timezone))
        try:
            report = self.monitor.run_cadence(cadence, now)
        except Exception as e:
            # Never let a run take down the scheduler thread
            logger.exception(f"Unhandled error in {name} job: {e}")
            return None
        self.last_reports[name] = report
        return report
