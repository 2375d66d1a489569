"""
Reconciliation Pipeline

Runs one time window through every stage:

    read -> canonicalize -> correlate -> detect gaps -> group -> dispatch

and returns a RunReport. Stage-local failures are counted and logged with
their log_id; a run only ends early on its wall-clock timeout or an
unexpected error, and even then it returns a report instead of raising.
"""

import logging
import time
import uuid
from collections import Counter
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.monitoring.notifier import Health, classify_health, recommendation_for
from src.reconciliation.canonicalizer import Canonicalizer
from src.reconciliation.correlator import CascadeCorrelator
from src.reconciliation.dispatcher import DispatchResult, RemediationDispatcher
from src.reconciliation.errors import RunTimeoutError
from src.reconciliation.gap_detector import DispatchGapDetector
from src.reconciliation.grouper import RemediationGrouper
from src.reconciliation.models import (
    CorrelatedChange,
    EntityKind,
    MissingTrigger,
    ReconstructedDeletion,
    Resolution,
)
from src.reconciliation.repository import ChangeLogRepository, OutcomeRepository
from src.utils.correlation import submit_with_context

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Outcome of one reconciliation run."""

    run_id: str
    cadence: str
    window_start: datetime
    window_end: datetime
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: str = "running"
    error: Optional[str] = None
    dry_run: bool = False
    rows_read: int = 0
    discards: Dict[str, int] = field(default_factory=dict)
    relevant: int = 0
    past_stays_skipped: int = 0
    deferred: int = 0
    unresolved: List[Dict[str, Any]] = field(default_factory=list)
    partial_deletions: int = 0
    candidates: int = 0
    notified: int = 0
    missing_triggers: int = 0
    silent_skips: int = 0
    already_remediated: int = 0
    groups: int = 0
    dispatch: Dict[str, Any] = field(default_factory=dict)
    success_rate: Optional[float] = None
    health: Optional[str] = None
    recommendation: Optional[str] = None
    pattern: Dict[str, Dict[str, int]] = field(default_factory=dict)
    triggers: List[Dict[str, Any]] = field(default_factory=list)
    query_ms: Optional[float] = None
    budget_ms: Optional[float] = None
    budget_exceeded: bool = False
    duration_seconds: float = 0.0

    STATUS_SUCCESS = "success"
    STATUS_FAILED = "failed"
    STATUS_TIMEOUT = "timeout"
    STATUS_LOCKED = "locked"

    @property
    def is_healthy(self) -> bool:
        if self.status != self.STATUS_SUCCESS:
            return False
        if self.dispatch.get("failed"):
            return False
        return self.health in (None, Health.HEALTHY.value) and not self.unresolved

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "cadence": self.cadence,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "error": self.error,
            "dry_run": self.dry_run,
            "rows_read": self.rows_read,
            "discards": dict(self.discards),
            "relevant": self.relevant,
            "past_stays_skipped": self.past_stays_skipped,
            "deferred": self.deferred,
            "unresolved": list(self.unresolved),
            "partial_deletions": self.partial_deletions,
            "candidates": self.candidates,
            "notified": self.notified,
            "missing_triggers": self.missing_triggers,
            "silent_skips": self.silent_skips,
            "already_remediated": self.already_remediated,
            "groups": self.groups,
            "dispatch": dict(self.dispatch),
            "success_rate": self.success_rate,
            "health": self.health,
            "recommendation": self.recommendation,
            "pattern": self.pattern,
            "triggers": list(self.triggers),
            "query_ms": self.query_ms,
            "budget_ms": self.budget_ms,
            "budget_exceeded": self.budget_exceeded,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class ReconciliationPipeline:
    """
    Orchestrates the reconciliation stages for a time window.

    Windows are half-open: since <= log_time < until. A change is only
    classified once its dispatch window has closed; younger changes are
    deferred and counted, and are picked up by a later overlapping run.
    """

    def __init__(
        self,
        change_log: ChangeLogRepository,
        gap_detector: DispatchGapDetector,
        outcome_repository: OutcomeRepository,
        dispatcher: Optional[RemediationDispatcher] = None,
        canonicalizer: Optional[Canonicalizer] = None,
        correlator: Optional[CascadeCorrelator] = None,
        grouper: Optional[RemediationGrouper] = None,
        max_workers: int = 4,
        skip_past_stays: bool = True,
        warning_threshold: float = 95.0,
        critical_threshold: float = 80.0,
        today: Callable[[], date] = date.today,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Initialize the pipeline.

        Args:
            change_log: Audit log repository
            gap_detector: Dispatch-gap detector
            outcome_repository: Outcome log (for already-remediated suppression)
            dispatcher: Remediation dispatcher (detect-only if None)
            canonicalizer: Row canonicalizer
            correlator: Cascade correlator (built on change_log if None)
            grouper: Remediation grouper
            max_workers: Worker pool size for gap detection
            skip_past_stays: Skip changes whose stay ended before today
            warning_threshold: Success rate (%) for minor health
            critical_threshold: Success rate (%) for degraded health
            today: Clock returning the current date
            clock: Clock returning the current aware datetime
        """
        self.change_log = change_log
        self.gap_detector = gap_detector
        self.outcome_repository = outcome_repository
        self.dispatcher = dispatcher
        self.canonicalizer = canonicalizer or Canonicalizer()
        self.correlator = correlator or CascadeCorrelator(change_log, self.canonicalizer)
        self.grouper = grouper or RemediationGrouper()
        self.max_workers = max(1, max_workers)
        self.skip_past_stays = skip_past_stays
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.today = today
        self.clock = clock

        logger.info(f"Initialized ReconciliationPipeline (workers={self.max_workers}, detect_only={dispatcher is None})")

    def run(
        self,
        since: datetime,
        until: datetime,
        cadence: str = "adhoc",
        budget_ms: Optional[float] = None,
        timeout: Optional[float] = None,
        run_id: Optional[str] = None
    ) -> RunReport:
        """
        Reconcile one time window.

        Args:
            since: Window start (inclusive)
            until: Window end (exclusive)
            cadence: Cadence name for reporting
            budget_ms: Query cost budget in milliseconds
            timeout: Wall-clock timeout in seconds
            run_id: Run identifier (generated if None)

        Returns:
            RunReport with status success, failed or timeout
        """
        if until <= since:
            raise ValueError(f"Empty window: {since.isoformat()} >= {until.isoformat()}")

        report = RunReport(
            run_id=run_id or str(uuid.uuid4()),
            cadence=cadence,
            window_start=since,
            window_end=until,
            started_at=datetime.now(timezone.utc),
            budget_ms=budget_ms,
            dry_run=bool(self.dispatcher and self.dispatcher.dry_run),
        )
        start = time.monotonic()
        deadline = start + timeout if timeout else None

        log_extra = {"cadence": cadence, "run_id": report.run_id}
        logger.info(
            f"Starting {cadence} run {report.run_id} for [{since.isoformat()}, {until.isoformat()})",
            extra=log_extra
        )

        try:
            self._execute(report, since, until, deadline)
            report.status = RunReport.STATUS_SUCCESS
        except RunTimeoutError as e:
            report.status = RunReport.STATUS_TIMEOUT
            report.error = str(e)
            logger.error(f"Run {report.run_id} timed out: {e}")
        except Exception as e:
            report.status = RunReport.STATUS_FAILED
            report.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Run {report.run_id} failed: {e}")
        finally:
            report.finished_at = datetime.now(timezone.utc)
            report.duration_seconds = time.monotonic() - start

        logger.info(
            f"Finished {cadence} run {report.run_id} ({report.status}) in {report.duration_seconds:.3f}s: "
            f"{report.rows_read} rows, {report.candidates} candidates, {report.deferred} deferred, "
            f"{report.missing_triggers} missing, {report.groups} groups",
            extra={**log_extra, "duration": round(report.duration_seconds, 3)}
        )
        return report

    @property
    def settle_delay(self) -> timedelta:
        """Age a change must reach before its dispatch window has closed."""
        return self.gap_detector.window

    def _execute(self, report: RunReport, since: datetime, until: datetime, deadline: Optional[float]) -> None:
        query_started = time.monotonic()

        rows = self.change_log.fetch_changes(since, until)
        report.rows_read = len(rows)

        changes, discards = self.canonicalizer.canonicalize_batch(rows)
        discards = Counter(discards)
        changes = [c for c in changes if c.entity == EntityKind.RESERVATION]
        relevant = [c for c in changes if c.relevant]
        report.relevant = len(relevant)
        self._check_deadline(deadline, "canonicalize")

        resolved = []
        for change in relevant:
            try:
                correlated = self.correlator.correlate(change)
            except Exception as e:
                discards["correlation_error"] += 1
                logger.exception(
                    f"Correlation failed for log {change.log_id}: {e}", extra={"log_id": change.log_id}
                )
                continue

            if isinstance(correlated, ReconstructedDeletion):
                if correlated.resolution == Resolution.UNRESOLVED:
                    report.unresolved.append(correlated.to_dict())
                    continue
                if correlated.resolution == Resolution.PARTIAL:
                    report.partial_deletions += 1
            elif not correlated.is_resolved:
                discards["missing_dates"] += 1
                logger.warning(
                    f"Log {change.log_id} has no usable date range, skipping", extra={"log_id": change.log_id}
                )
                continue

            resolved.append(correlated)
        self._check_deadline(deadline, "correlate")

        candidates = self._filter_past_stays(resolved, report)
        candidates = self._defer_unsettled(candidates, report)
        report.candidates = len(candidates)

        triggers, detection_errors = self._detect(candidates, deadline)
        if detection_errors:
            discards["detection_error"] += detection_errors
        report.query_ms = (time.monotonic() - query_started) * 1000
        report.discards = dict(discards)

        checked = report.candidates - detection_errors
        report.missing_triggers = len(triggers)
        report.silent_skips = sum(1 for t in triggers if t.possible_silent_skip)
        report.notified = checked - len(triggers)
        report.success_rate = (report.notified / checked * 100) if checked > 0 else 100.0

        health = classify_health(report.success_rate, self.warning_threshold, self.critical_threshold)
        report.health = health.value
        report.recommendation = recommendation_for(health)
        report.pattern = self._analyze_patterns(triggers)
        report.triggers = [t.to_dict() for t in triggers]

        if report.budget_ms is not None and report.query_ms > report.budget_ms:
            report.budget_exceeded = True
            logger.warning(
                f"{report.cadence} query cost {report.query_ms:.1f} ms exceeded budget "
                f"{report.budget_ms:.0f} ms; review indexes or cadence"
            )

        pending = self._suppress_remediated(triggers, report)
        groups = self.grouper.group(pending)
        report.groups = len(groups)

        if self.dispatcher is None or not groups:
            report.dispatch = DispatchResult().to_dict()
            return

        result = self.dispatcher.dispatch_all(groups, run_id=report.run_id, timeout=self._remaining(deadline))
        report.dispatch = result.to_dict()

    def _filter_past_stays(self, changes: List[CorrelatedChange], report: RunReport) -> List[CorrelatedChange]:
        if not self.skip_past_stays:
            return changes

        today = self.today()
        kept = [c for c in changes if c.check_out >= today]
        report.past_stays_skipped = len(changes) - len(kept)
        if report.past_stays_skipped:
            logger.debug(f"Skipped {report.past_stays_skipped} changes for stays ending before {today.isoformat()}")
        return kept

    def _defer_unsettled(self, changes: List[CorrelatedChange], report: RunReport) -> List[CorrelatedChange]:
        cutoff = self.clock() - self.settle_delay
        settled = [c for c in changes if c.log_time <= cutoff]
        report.deferred = len(changes) - len(settled)
        if report.deferred:
            logger.info(
                f"Deferred {report.deferred} changes logged after {cutoff.isoformat()}; "
                f"their dispatch window is still open"
            )
        return settled

    def _detect(
        self,
        candidates: List[CorrelatedChange],
        deadline: Optional[float]
    ) -> Tuple[List[MissingTrigger], int]:
        if not candidates:
            return [], 0

        triggers = []
        errors = 0
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(candidates)))
        try:
            futures = {submit_with_context(executor, self.gap_detector.check, change): change for change in candidates}
            _, pending = wait(futures, timeout=self._remaining(deadline), return_when=ALL_COMPLETED)
            if pending:
                raise RunTimeoutError(
                    f"Gap detection timed out with {len(pending)} of {len(candidates)} changes pending"
                )

            for future, change in futures.items():
                try:
                    trigger = future.result()
                except Exception as e:
                    errors += 1
                    logger.error(
                        f"Gap detection failed for log {change.log_id}: {e}", extra={"log_id": change.log_id}
                    )
                    continue
                if trigger is not None:
                    triggers.append(trigger)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        triggers.sort(key=lambda t: t.sort_key())
        return triggers, errors

    def _suppress_remediated(self, triggers: List[MissingTrigger], report: RunReport) -> List[MissingTrigger]:
        if not triggers:
            return []

        log_ids = {log_id for trigger in triggers for log_id in trigger.log_ids}
        remediated = self.outcome_repository.find_remediated_log_ids(log_ids)

        pending = [t for t in triggers if not set(t.log_ids) <= remediated]
        report.already_remediated = len(triggers) - len(pending)
        if report.already_remediated:
            logger.info(f"Suppressed {report.already_remediated} triggers already remediated by earlier runs")
        return pending

    @staticmethod
    def _analyze_patterns(triggers: List[MissingTrigger]) -> Dict[str, Dict[str, int]]:
        by_action: Counter = Counter()
        by_status: Counter = Counter()
        by_hotel: Counter = Counter()

        for trigger in triggers:
            by_action[trigger.action] += 1
            if trigger.status:
                by_status[trigger.status] += 1
            by_hotel[str(trigger.hotel_id)] += 1

        return {
            "by_action": dict(by_action),
            "by_status": dict(by_status),
            "by_hotel": dict(by_hotel),
        }

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    @staticmethod
    def _check_deadline(deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise RunTimeoutError(f"Run timed out after {stage}")
