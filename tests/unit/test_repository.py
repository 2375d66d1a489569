"""
Unit tests for the PostgreSQL repository with a mocked connection pool.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from src.reconciliation.models import DispatchOutcome
from src.reconciliation.repository import PostgresRepository, connect_repository

NOW = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def pool():
    return MagicMock()


@pytest.fixture
def connection(pool):
    return pool.getconn.return_value


@pytest.fixture
def cursor(connection):
    return connection.cursor.return_value.__enter__.return_value


@pytest.fixture
def repository(pool):
    return PostgresRepository(pool=pool)


class TestPostgresRepository:
    """Test SQL plumbing of PostgresRepository."""

    def test_pool_created_with_statement_timeout(self):
        """Test that sessions carry the configured statement timeout."""
        with patch("src.reconciliation.repository.ThreadedConnectionPool") as pool_class:
            PostgresRepository(host="db", port=6432, database="pms", statement_timeout_ms=5000,
                               min_connections=2, max_connections=6)

        args, kwargs = pool_class.call_args
        assert args == (2, 6)
        assert kwargs["host"] == "db"
        assert kwargs["dbname"] == "pms"
        assert kwargs["options"] == "-c statement_timeout=5000"

    def test_cursor_commits_and_returns_connection(self, repository, pool, connection, cursor):
        cursor.fetchall.return_value = []

        repository.fetch_changes(NOW - timedelta(hours=1), NOW)

        connection.commit.assert_called_once()
        pool.putconn.assert_called_once_with(connection)

    def test_cursor_rolls_back_on_error(self, repository, pool, connection, cursor):
        """Test that failed statements roll back and release the connection."""
        cursor.execute.side_effect = psycopg2.Error("boom")

        with pytest.raises(psycopg2.Error):
            repository.fetch_changes(NOW - timedelta(hours=1), NOW)

        connection.rollback.assert_called_once()
        connection.commit.assert_not_called()
        pool.putconn.assert_called_once_with(connection)

    def test_fetch_changes(self, repository, cursor):
        """Test the half-open window query and row mapping."""
        cursor.fetchall.return_value = [{
            "log_id": 1,
            "log_time": NOW,
            "action": "INSERT",
            "table_name": "reservations_25",
            "record_id": 501,
            "changes": {"check_in": "2024-01-10"},
        }]
        since = NOW - timedelta(hours=1)

        rows = repository.fetch_changes(since, NOW)

        query, params = cursor.execute.call_args[0]
        assert "log_time >= %s" in query
        assert "log_time < %s" in query
        assert params == (since, NOW, "reservations\\_%", len("reservations_") + 3)
        assert rows[0].log_id == 1
        assert rows[0].entity_table == "reservations_25"
        assert rows[0].record_id == "501"

    def test_find_correlated_children(self, repository, cursor):
        cursor.fetchall.return_value = []

        repository.find_correlated_children("900", 25, NOW, timedelta(minutes=10))

        _, params = cursor.execute.call_args[0]
        assert params == ("reservation_details_25", "900", NOW - timedelta(minutes=10), NOW + timedelta(minutes=10))

    def test_find_dispatch(self, repository, cursor):
        """Test dispatch lookup and record mapping."""
        cursor.fetchone.return_value = {
            "hotel_id": 25,
            "created_at": NOW,
            "request_id": "req-1",
            "service_name": "OTA_HotelStockNotif",
            "status": "sent",
        }

        record = repository.find_dispatch(25, "%Stock%", NOW, NOW + timedelta(minutes=5))

        query, params = cursor.execute.call_args[0]
        assert "created_at > %s" in query
        assert "created_at <= %s" in query
        assert params == (25, NOW, NOW + timedelta(minutes=5), "%Stock%")
        assert record.request_id == "req-1"

    def test_find_dispatch_none(self, repository, cursor):
        cursor.fetchone.return_value = None

        assert repository.find_dispatch(25, "%Stock%", NOW, NOW) is None

    def test_find_nearest_dispatch_orders_by_distance(self, repository, cursor):
        cursor.fetchone.return_value = None

        repository.find_nearest_dispatch(25, "%Stock%", NOW, NOW - timedelta(minutes=15), NOW + timedelta(minutes=30))

        query, params = cursor.execute.call_args[0]
        assert "ORDER BY ABS" in query
        assert params[-1] == NOW

    def test_record_outcome(self, repository, cursor):
        """Test outcome insert parameters."""
        outcome = DispatchOutcome(
            hotel_id=25,
            check_in=date(2024, 1, 21),
            check_out=date(2024, 1, 24),
            log_ids=(11, 12),
            attempt=2,
            result=DispatchOutcome.SUCCESS,
            attempted_at=NOW,
            status_code=200,
            run_id="run-1",
            members=({"log_ids": [11, 12]},),
        )

        repository.record_outcome(outcome)

        _, params = cursor.execute.call_args[0]
        assert params[0] == "run-1"
        assert params[4] == [11, 12]
        assert params[5].adapted == [{"log_ids": [11, 12]}]
        assert params[6:10] == (2, "success", 200, None)
        assert params[10] is False

    def test_find_remediated_log_ids(self, repository, cursor):
        cursor.fetchall.return_value = [{"log_id": 11}, {"log_id": 99}]

        found = repository.find_remediated_log_ids([12, 11, 11])

        _, params = cursor.execute.call_args[0]
        assert params == (DispatchOutcome.SUCCESS, [11, 12])
        assert found == {11}

    def test_find_remediated_log_ids_empty(self, repository, pool):
        assert repository.find_remediated_log_ids([]) == set()
        pool.getconn.assert_not_called()

    @pytest.mark.parametrize("row,acquired", [({"owner": "worker-1"}, True), (None, False)])
    def test_acquire_lock(self, repository, cursor, row, acquired):
        """Test lock acquisition against a live or expired holder."""
        cursor.fetchone.return_value = row

        assert repository.acquire_lock("hourly:3600", "worker-1", 300) is acquired
        query, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (lock_key) DO UPDATE" in query
        assert params == ("hourly:3600", "worker-1", 300)

    def test_release_lock_scoped_to_owner(self, repository, cursor):
        repository.release_lock("hourly:3600", "worker-1")

        query, params = cursor.execute.call_args[0]
        assert "owner = %s" in query
        assert params == ("hourly:3600", "worker-1")

    def test_record_run(self, repository, cursor):
        """Test run log upsert."""
        report = {
            "run_id": "run-1",
            "cadence": "hourly",
            "window_start": "2024-01-08T08:00:00+00:00",
            "window_end": "2024-01-08T09:00:00+00:00",
            "status": "success",
            "started_at": "2024-01-08T09:00:01+00:00",
            "finished_at": "2024-01-08T09:00:02+00:00",
            "success_rate": 100.0,
            "query_ms": 12.5,
        }

        repository.record_run(report)

        query, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (run_id) DO UPDATE" in query
        assert params[:5] == ("run-1", "hourly", report["window_start"], report["window_end"], "success")
        assert params[9] is False
        assert params[10].adapted == report

    def test_ensure_schema(self, repository, cursor):
        repository.ensure_schema()

        ddl = cursor.execute.call_args[0][0]
        assert "inventory_remediation_outcomes" in ddl
        assert "reconciliation_run_locks" in ddl
        assert "reconciliation_runs" in ddl

    def test_close(self, repository, pool):
        repository.close()

        pool.closeall.assert_called_once()


class TestConnectRepository:
    """Test connection helper."""

    def test_connection_error_propagates(self):
        with patch(
            "src.reconciliation.repository.ThreadedConnectionPool",
            side_effect=psycopg2.OperationalError("could not connect")
        ):
            with pytest.raises(psycopg2.OperationalError):
                connect_repository(host="nowhere")
