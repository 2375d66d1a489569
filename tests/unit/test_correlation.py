"""
Unit tests for correlation module.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.utils.correlation import (
    CORRELATION_HEADER,
    CorrelationContext,
    CorrelationIdFilter,
    clear_correlation_id,
    correlation_headers,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
    submit_with_context,
)


class TestCorrelationIdGeneration:
    """Test correlation ID generation functions."""

    def test_generate_correlation_id_returns_valid_uuid(self):
        """Test that generated correlation ID is a valid UUID."""
        correlation_id = generate_correlation_id()

        assert isinstance(correlation_id, str)
        assert str(uuid.UUID(correlation_id)) == correlation_id

    def test_generate_correlation_id_returns_unique_values(self):
        """Test that multiple generated IDs are unique."""
        assert len({generate_correlation_id() for _ in range(5)}) == 5


class TestCorrelationIdContext:
    """Test correlation ID context management."""

    def test_get_correlation_id_returns_none_when_not_set(self):
        assert get_correlation_id() is None

    def test_set_and_get_correlation_id(self):
        set_correlation_id("run-123")

        assert get_correlation_id() == "run-123"

    @pytest.mark.parametrize("value", ["", None, 12345])
    def test_set_invalid_correlation_id_raises_error(self, value):
        """Test that empty or non-string ids are rejected."""
        with pytest.raises(ValueError, match="non-empty string"):
            set_correlation_id(value)

    def test_clear_correlation_id(self):
        set_correlation_id("run-123")
        clear_correlation_id()

        assert get_correlation_id() is None


class TestCorrelationContext:
    """Test the CorrelationContext context manager."""

    def test_uses_given_id(self):
        with CorrelationContext("run-1") as correlation_id:
            assert correlation_id == "run-1"
            assert get_correlation_id() == "run-1"

        assert get_correlation_id() is None

    def test_generates_id(self):
        with CorrelationContext() as correlation_id:
            assert uuid.UUID(correlation_id)

    def test_restores_previous_id(self):
        """Test that nested contexts restore the outer id."""
        with CorrelationContext("outer"):
            with CorrelationContext("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"

    def test_restores_on_exception(self):
        with pytest.raises(RuntimeError):
            with CorrelationContext("run-1"):
                raise RuntimeError("boom")

        assert get_correlation_id() is None


class TestCorrelationPropagation:
    """Test propagation to threads, logs and HTTP headers."""

    def test_submit_with_context(self):
        """Test that worker threads see the submitting thread's id."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            with CorrelationContext("run-9"):
                future = submit_with_context(executor, get_correlation_id)
            plain = executor.submit(get_correlation_id)

        assert future.result() == "run-9"
        assert plain.result() is None

    def test_submit_with_context_passes_arguments(self):
        with ThreadPoolExecutor(max_workers=1) as executor:
            future = submit_with_context(executor, pow, 2, 5)

        assert future.result() == 32

    def test_log_filter(self):
        """Test that log records carry the correlation id."""
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "message", None, None)
        log_filter = CorrelationIdFilter()

        assert log_filter.filter(record)
        assert record.correlation_id == "N/A"

        with CorrelationContext("run-5"):
            log_filter.filter(record)
        assert record.correlation_id == "run-5"

    def test_correlation_headers(self):
        """Test header injection without mutating the input."""
        base = {"Content-Type": "application/json"}

        assert correlation_headers(base) == base

        with CorrelationContext("run-3"):
            headers = correlation_headers(base)

        assert headers[CORRELATION_HEADER] == "run-3"
        assert CORRELATION_HEADER not in base
