"""
Logging setup for the reconciliation CLI and scheduler.

Human-readable console output by default; one JSON object per record on
stderr when JSON_LOGGING=true. Both handlers carry the correlation id of
the current run.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from src.utils.correlation import CorrelationIdFilter

# Extra record attributes copied into JSON output
_EXTRA_FIELDS = ("cadence", "run_id", "log_id", "hotel_id", "duration")


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with correlation ID support."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'N/A'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                key = 'duration_seconds' if name == 'duration' else name
                log_data[key] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(verbose: bool = False, json_logs: Optional[bool] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_logs: Emit JSON records (defaults to the JSON_LOGGING env var)

    Returns:
        The configured root logger
    """
    if json_logs is None:
        json_logs = os.getenv('JSON_LOGGING', 'false').lower() == 'true'

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())

    if json_logs:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(correlation_id)s] %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Chatty third-party loggers
    for name in ("urllib3", "apscheduler.executors.default"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
