"""
Correlation ID Utility for the Reconciliation Pipeline

Each reconciliation run executes inside a CorrelationContext whose id is the
run id. The id is stamped on log records, propagated to worker threads and
sent to the site controller as a request header, so one run can be traced
across logs, the outcome log and the remote service.
"""

import contextvars
import logging
import uuid
from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Context variable for correlation ID
_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id',
    default=None
)


def generate_correlation_id() -> str:
    """
    Generate a new correlation ID using UUID4.

    Returns:
        String representation of a UUID4
    """
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context, or None if not set."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """
    Set the correlation ID in the current context.

    Args:
        correlation_id: Correlation ID to set

    Raises:
        ValueError: If correlation_id is empty or invalid
    """
    if not correlation_id or not isinstance(correlation_id, str):
        raise ValueError("Correlation ID must be a non-empty string")

    _correlation_id.set(correlation_id)


def clear_correlation_id() -> None:
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


class CorrelationContext:
    """
    Context manager for correlation ID management.

    Sets the id for the duration of a run and restores the previous one on exit.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        """
        Initialize correlation context.

        Args:
            correlation_id: Id to use (typically the run id). Generated if not provided.
        """
        self.correlation_id = correlation_id
        self.previous_id = None

    def __enter__(self) -> str:
        self.previous_id = get_correlation_id()

        if not self.correlation_id:
            self.correlation_id = generate_correlation_id()
        set_correlation_id(self.correlation_id)

        logger.debug(f"Entered correlation context: {self.correlation_id}")
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous_id:
            set_correlation_id(self.previous_id)
        else:
            clear_correlation_id()


class CorrelationIdFilter(logging.Filter):
    """Logging filter adding `correlation_id` to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "N/A"
        return True


def submit_with_context(executor: Executor, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
    """
    Submit work to an executor inside a copy of the current context.

    Worker threads do not inherit context variables, so without this the
    correlation id would be missing from worker log records.
    """
    context = contextvars.copy_context()
    return executor.submit(context.run, fn, *args, **kwargs)


def correlation_headers(headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Return HTTP headers carrying the current correlation ID.

    Args:
        headers: Headers to extend (copied, not modified)

    Returns:
        Headers with X-Correlation-ID set when a correlation ID is active
    """
    result = dict(headers or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        result[CORRELATION_HEADER] = correlation_id
    return result
