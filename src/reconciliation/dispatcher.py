"""
Remediation Dispatcher for Inventory Reconciliation

Issues one idempotent recompute call per RemediationGroup to the site
controller:

    POST {base_url}/inventory/{hotel_id}/{check_in}/{check_out}

Transient failures (connection errors, timeouts, 5xx, 429) are retried with
exponential backoff; other 4xx responses fail immediately. Every attempt is
written to the outcome log with the group's member provenance. Groups are
dispatched concurrently on a bounded worker pool so one failing group never
blocks the others. When a run times out, retry loops stop at the next attempt
and in-flight calls are drained before the run returns.
"""

import logging
import threading
import time
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, stop_when_event_set, wait_exponential

from src.reconciliation.errors import DispatchCancelledError, DispatchError, RunTimeoutError
from src.reconciliation.models import DispatchOutcome, MissingTrigger, RemediationGroup
from src.reconciliation.repository import OutcomeRepository
from src.utils.correlation import correlation_headers, submit_with_context

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429}


@dataclass
class DispatchResult:
    """Aggregate result of dispatching a set of groups."""

    successful: int = 0
    failed: int = 0
    dry_run: int = 0
    cancelled: int = 0
    attempts: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.successful + self.failed + self.dry_run

    def add(self, other: "DispatchResult") -> None:
        self.successful += other.successful
        self.failed += other.failed
        self.dry_run += other.dry_run
        self.cancelled += other.cancelled
        self.attempts += other.attempts
        self.failures.extend(other.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "attempts": self.attempts,
            "failures": self.failures,
        }


def is_retryable(error: BaseException) -> bool:
    """Return True if a dispatch failure should be retried."""
    return isinstance(error, DispatchError) and error.retryable


class RemediationDispatcher:
    """
    Sends remediation calls for groups and records every attempt.

    The endpoint is idempotent, so replaying a group (after a timeout, a
    crash or from the CLI) is always safe.
    """

    def __init__(
        self,
        base_url: str,
        outcome_repository: OutcomeRepository,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 10.0,
        max_workers: int = 4,
        api_token: Optional[str] = None,
        notifier: Optional[Any] = None,
        metrics: Optional[Any] = None,
        dry_run: bool = False,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Initialize the dispatcher.

        Args:
            base_url: Site controller base URL
            outcome_repository: Outcome log writer
            session: HTTP session (a new requests.Session by default)
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per group including the first
            backoff_min: Minimum backoff between attempts (seconds)
            backoff_max: Maximum backoff between attempts (seconds)
            max_workers: Max concurrent outbound calls
            api_token: Bearer token for the site controller
            notifier: Operator alert channel for permanent failures
            metrics: PipelineMetrics instance
            dry_run: Record outcomes without calling the endpoint
            sleep: Sleep function used between retries (by default an
                interruptible wait on the run's cancel event)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.base_url = base_url.rstrip("/")
        self.outcome_repository = outcome_repository
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.max_workers = max(1, max_workers)
        self.api_token = api_token
        self.notifier = notifier
        self.metrics = metrics
        self.dry_run = dry_run
        self._sleep = sleep

        logger.info(
            f"Initialized RemediationDispatcher for {self.base_url} "
            f"(max_attempts={max_attempts}, workers={self.max_workers}, dry_run={dry_run})"
        )

    def endpoint_url(self, group: RemediationGroup) -> str:
        return (
            f"{self.base_url}/inventory/{group.hotel_id}/"
            f"{group.check_in.isoformat()}/{group.check_out.isoformat()}"
        )

    def dispatch(
        self,
        group: RemediationGroup,
        run_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None
    ) -> DispatchResult:
        """
        Dispatch one group, retrying transient failures.

        Never raises for dispatch failures; they end up in the outcome log,
        the notifier and the returned result. Once `cancel` is set no further
        attempt is started and the group is counted as cancelled; a request
        already in flight finishes within the request timeout.

        Args:
            group: Remediation group
            run_id: Run identifier stamped on outcomes
            cancel: Event set when the owning run is cancelled

        Returns:
            DispatchResult for this group
        """
        result = DispatchResult()
        extra = {"hotel_id": group.hotel_id}

        if self.dry_run:
            self._record(group, 1, DispatchOutcome.DRY_RUN, run_id)
            result.dry_run = 1
            result.attempts = 1
            logger.info(f"[dry-run] Would remediate {self._describe(group)}", extra=extra)
            return result

        stop = stop_after_attempt(self.max_attempts)
        if cancel is not None:
            stop = stop | stop_when_event_set(cancel)

        retrying = Retrying(
            stop=stop,
            wait=wait_exponential(min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception(is_retryable),
            sleep=lambda seconds: self._pause(seconds, cancel),
            reraise=True
        )

        try:
            for attempt in retrying:
                with attempt:
                    if cancel is not None and cancel.is_set():
                        raise DispatchCancelledError()
                    result.attempts = attempt.retry_state.attempt_number
                    self._attempt(group, result.attempts, run_id)
        except DispatchError as e:
            cancelled = isinstance(e, DispatchCancelledError) or (
                cancel is not None and cancel.is_set() and e.retryable and result.attempts < self.max_attempts
            )
            if cancelled:
                result.cancelled = 1
                logger.warning(
                    f"Stopped remediating {self._describe(group)} after {result.attempts} attempt(s): run cancelled",
                    extra=extra
                )
                return result

            result.failed = 1
            result.failures.append({
                **group.to_dict(),
                "attempts": result.attempts,
                "status_code": e.status_code,
                "error": str(e),
            })
            logger.error(
                f"Permanent failure remediating {self._describe(group)} after {result.attempts} attempt(s): {e}",
                extra=extra
            )
            self._notify_permanent_failure(group, e, result.attempts)
            return result

        result.successful = 1
        logger.info(f"Remediated {self._describe(group)} in {result.attempts} attempt(s)", extra=extra)
        return result

    def dispatch_all(
        self,
        groups: Iterable[RemediationGroup],
        run_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> DispatchResult:
        """
        Dispatch groups concurrently on a bounded worker pool.

        Args:
            groups: Remediation groups
            run_id: Run identifier stamped on outcomes
            timeout: Wall-clock budget in seconds for all groups

        Returns:
            Aggregated DispatchResult

        Raises:
            RunTimeoutError: If the groups do not finish within `timeout`.
                Raised only after every started dispatch has stopped.
        """
        groups = list(groups)
        total = DispatchResult()
        if not groups:
            return total

        cancel = threading.Event()
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups)))
        try:
            futures = [submit_with_context(executor, self.dispatch, group, run_id, cancel) for group in groups]
            _, pending = wait(futures, timeout=timeout, return_when=ALL_COMPLETED)

            if pending:
                cancel.set()
                for future in pending:
                    future.cancel()
                # Running dispatches stop before their next attempt
                wait(pending, return_when=ALL_COMPLETED)
                raise RunTimeoutError(
                    f"Dispatch timed out after {timeout}s with {len(pending)} of {len(groups)} groups pending"
                )

            for future in futures:
                try:
                    total.add(future.result())
                except Exception as e:
                    # dispatch() only raises on bugs; keep the other groups going
                    logger.exception(f"Unexpected dispatch error: {e}")
                    total.failed += 1
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            f"Dispatched {len(groups)} groups: {total.successful} succeeded, "
            f"{total.failed} failed, {total.dry_run} dry-run"
        )
        return total

    def _attempt(self, group: RemediationGroup, attempt: int, run_id: Optional[str]) -> None:
        headers = correlation_headers({"Content-Type": "application/json"})
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        payload = {
            "hotel_id": group.hotel_id,
            "check_in": group.check_in.isoformat(),
            "check_out": group.check_out.isoformat(),
            "log_ids": group.log_ids,
            "run_id": run_id,
        }

        try:
            response = self.session.post(
                self.endpoint_url(group),
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            error = DispatchError(f"{type(e).__name__}: {e}", retryable=True)
            self._record_failure(group, attempt, run_id, error)
            raise error from e
        except requests.RequestException as e:
            error = DispatchError(f"{type(e).__name__}: {e}", retryable=False)
            self._record_failure(group, attempt, run_id, error)
            raise error from e

        status = response.status_code
        if 200 <= status < 300:
            self._record(group, attempt, DispatchOutcome.SUCCESS, run_id, status_code=status)
            return

        retryable = status >= 500 or status in RETRYABLE_STATUS_CODES
        error = DispatchError(
            f"HTTP {status}: {response.text[:200]}",
            retryable=retryable,
            status_code=status
        )
        self._record_failure(group, attempt, run_id, error)
        raise error

    def _record_failure(
        self,
        group: RemediationGroup,
        attempt: int,
        run_id: Optional[str],
        error: DispatchError
    ) -> None:
        final = not error.retryable or attempt >= self.max_attempts
        result = DispatchOutcome.PERMANENT_FAILURE if final else DispatchOutcome.TRANSIENT_FAILURE
        logger.warning(
            f"Attempt {attempt} for {self._describe(group)} failed ({result}): {error}",
            extra={"hotel_id": group.hotel_id}
        )
        self._record(group, attempt, result, run_id, status_code=error.status_code, error=str(error))

    def _record(
        self,
        group: RemediationGroup,
        attempt: int,
        result: str,
        run_id: Optional[str],
        status_code: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        outcome = DispatchOutcome(
            hotel_id=group.hotel_id,
            check_in=group.check_in,
            check_out=group.check_out,
            log_ids=tuple(group.log_ids),
            attempt=attempt,
            result=result,
            attempted_at=datetime.now(timezone.utc),
            status_code=status_code,
            error=error,
            run_id=run_id,
            members=tuple(member.to_dict() for member in group.members),
            dry_run=result == DispatchOutcome.DRY_RUN,
        )

        if self.metrics is not None:
            self.metrics.record_dispatch_attempt(result)

        try:
            self.outcome_repository.record_outcome(outcome)
        except Exception as e:
            logger.error(f"Failed to record outcome for {self._describe(group)} attempt {attempt}: {e}")

    def _pause(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)

    def _notify_permanent_failure(self, group: RemediationGroup, error: DispatchError, attempts: int) -> None:
        if self.metrics is not None:
            self.metrics.record_permanent_failure()
        if self.notifier is not None:
            self.notifier.notify_permanent_failure(group, str(error), attempts)

    @staticmethod
    def _describe(group: RemediationGroup) -> str:
        return (
            f"hotel {group.hotel_id} {group.check_in.isoformat()}..{group.check_out.isoformat()} "
            f"({len(group.members)} triggers)"
        )


def group_from_failure(record: Dict[str, Any]) -> RemediationGroup:
    """
    Rebuild a RemediationGroup from a permanently failed outcome row.

    Args:
        record: Row from OutcomeRepository.find_permanent_failures

    Returns:
        Group with the original member triggers
    """
    members = [MissingTrigger.from_dict(member) for member in record.get("members") or []]
    check_in = record["check_in"]
    check_out = record["check_out"]
    if isinstance(check_in, str):
        check_in = datetime.fromisoformat(check_in).date()
    if isinstance(check_out, str):
        check_out = datetime.fromisoformat(check_out).date()

    return RemediationGroup(
        hotel_id=int(record["hotel_id"]),
        check_in=check_in,
        check_out=check_out,
        members=members
    )
