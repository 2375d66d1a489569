"""
Exception hierarchy for the inventory reconciliation pipeline.

Stage-local errors (malformed input, unresolved correlation) are caught
inside the pipeline and counted; run-level errors (lock held, timeout)
abort a single run without touching the scheduler.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation pipeline errors."""
    pass


class ConfigurationError(ReconciliationError):
    """Raised when pipeline configuration is missing or invalid."""
    pass


class MalformedChangeError(ReconciliationError):
    """
    Raised when an audit log row cannot be canonicalized.

    Attributes:
        reason: Short machine-readable discard reason
        log_id: Audit log id of the offending row, if known
    """

    def __init__(self, reason: str, message: str, log_id: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.log_id = log_id


class RunLockedError(ReconciliationError):
    """Raised when another run of the same cadence holds the run lock."""

    def __init__(self, lock_key: str):
        super().__init__(f"Run lock already held: {lock_key}")
        self.lock_key = lock_key


class RunTimeoutError(ReconciliationError):
    """Raised when a run exceeds its wall-clock timeout."""
    pass


class DispatchError(ReconciliationError):
    """
    Raised when a remediation call fails.

    Attributes:
        retryable: Whether the failure is transient (network, 5xx, 429)
        status_code: HTTP status code, if a response was received
    """

    def __init__(self, message: str, retryable: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class DispatchCancelledError(DispatchError):
    """Raised inside a retry loop when the run that owns the dispatch was cancelled."""

    def __init__(self, message: str = "Dispatch cancelled"):
        super().__init__(message, retryable=False)
