"""
Unit tests for logging setup.
"""

import json
import logging
import sys
from datetime import date, timedelta
from unittest.mock import Mock

import pytest

from src.reconciliation.dispatcher import RemediationDispatcher
from src.reconciliation.gap_detector import DispatchGapDetector
from src.reconciliation.pipeline import ReconciliationPipeline
from src.utils.correlation import CorrelationContext, CorrelationIdFilter
from src.utils.logging_setup import StructuredJSONFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    """Restore root handlers and level after configure_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _record(message="Remediated hotel 25", **extra):
    record = logging.LogRecord("src.reconciliation.dispatcher", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredJSONFormatter:
    """Test JSON log output."""

    def test_format(self):
        """Test the JSON fields of a record."""
        record = _record(hotel_id=25, cadence="hourly", duration=1.5)
        with CorrelationContext("run-1"):
            CorrelationIdFilter().filter(record)

        data = json.loads(StructuredJSONFormatter().format(record))

        assert data["message"] == "Remediated hotel 25"
        assert data["level"] == "INFO"
        assert data["logger"] == "src.reconciliation.dispatcher"
        assert data["correlation_id"] == "run-1"
        assert data["hotel_id"] == 25
        assert data["cadence"] == "hourly"
        assert data["duration_seconds"] == 1.5

    def test_format_without_correlation(self):
        data = json.loads(StructuredJSONFormatter().format(_record()))

        assert data["correlation_id"] == "N/A"
        assert "hotel_id" not in data

    def test_format_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(StructuredJSONFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestConfigureLogging:
    """Test root logger configuration."""

    def test_json_handler(self, restore_root_logger):
        root = configure_logging(verbose=True, json_logs=True)

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredJSONFormatter)
        assert any(isinstance(f, CorrelationIdFilter) for f in root.handlers[0].filters)

    def test_text_handler_from_env(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("JSON_LOGGING", "false")

        root = configure_logging()

        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, StructuredJSONFormatter)
        assert "%(correlation_id)s" in root.handlers[0].formatter._fmt


class TestRecordExtras:
    """Test that reconciliation logs carry the structured fields."""

    @pytest.fixture
    def report_logs(self, caplog, change_log, dispatch_queue, outcomes, make_row, base_time):
        change_log.add(
            make_row(1, base_time, "INSERT", {
                "id": 500, "hotel_id": 25, "check_in": "2024-01-21", "check_out": "2024-01-23",
            }),
            make_row(2, base_time, "INSERT", "{oops"),
        )
        session = Mock()
        session.post.return_value = Mock(status_code=200, text="")
        pipeline = ReconciliationPipeline(
            change_log,
            DispatchGapDetector(dispatch_queue),
            outcomes,
            dispatcher=RemediationDispatcher("http://sc", outcomes, session=session, sleep=Mock()),
            today=lambda: date(2024, 1, 8),
        )

        with caplog.at_level(logging.INFO):
            pipeline.run(base_time - timedelta(hours=1), base_time + timedelta(hours=1),
                         cadence="hourly", run_id="run-9")
        records = list(caplog.records)

        def formatted(prefix):
            record = next(r for r in records if r.getMessage().startswith(prefix))
            return json.loads(StructuredJSONFormatter().format(record))

        return formatted

    def test_run_logs_carry_cadence_and_run_id(self, report_logs):
        """Test the start and finish lines of a run."""
        started = report_logs("Starting hourly run")
        finished = report_logs("Finished hourly run")

        assert started["cadence"] == "hourly"
        assert started["run_id"] == "run-9"
        assert finished["run_id"] == "run-9"
        assert isinstance(finished["duration_seconds"], float)

    def test_discard_logs_carry_log_id(self, report_logs):
        assert report_logs("Discarded log 2")["log_id"] == 2

    def test_dispatch_logs_carry_hotel_id(self, report_logs):
        assert report_logs("Remediated hotel 25")["hotel_id"] == 25
