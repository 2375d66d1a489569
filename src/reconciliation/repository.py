"""
Data Access for Inventory Reconciliation

Abstract repositories injected into every pipeline component, plus the
PostgreSQL implementation built once at process start. Tests substitute
in-memory fakes.

External tables (read-only):
    logs_reservation   - append-only audit log of reservation mutations
    ota_xml_queue      - outbound dispatch queue to the site controller

Pipeline-owned tables (created by ensure_schema):
    inventory_remediation_outcomes - one row per dispatch attempt
    reconciliation_run_locks       - run-scoped locks per cadence
    reconciliation_runs            - run log / report history
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from src.reconciliation.canonicalizer import TableNaming
from src.reconciliation.models import ChangeLogRow, DispatchOutcome, DispatchRecord

logger = logging.getLogger(__name__)


SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS inventory_remediation_outcomes (
    id BIGSERIAL PRIMARY KEY,
    run_id TEXT,
    hotel_id INTEGER NOT NULL,
    check_in DATE NOT NULL,
    check_out DATE NOT NULL,
    log_ids BIGINT[] NOT NULL,
    members JSONB NOT NULL DEFAULT '[]'::jsonb,
    attempt INTEGER NOT NULL,
    result TEXT NOT NULL,
    status_code INTEGER,
    error TEXT,
    dry_run BOOLEAN NOT NULL DEFAULT FALSE,
    attempted_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_remediation_outcomes_log_ids
    ON inventory_remediation_outcomes USING GIN (log_ids);
CREATE INDEX IF NOT EXISTS idx_remediation_outcomes_result_time
    ON inventory_remediation_outcomes (result, attempted_at);

CREATE TABLE IF NOT EXISTS reconciliation_run_locks (
    lock_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS reconciliation_runs (
    run_id TEXT PRIMARY KEY,
    cadence TEXT NOT NULL,
    window_start TIMESTAMPTZ NOT NULL,
    window_end TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    success_rate DOUBLE PRECISION,
    query_ms DOUBLE PRECISION,
    budget_exceeded BOOLEAN NOT NULL DEFAULT FALSE,
    details JSONB NOT NULL DEFAULT '{}'::jsonb
);
"""


class ChangeLogRepository(ABC):
    """Read access to the reservation audit log."""

    @abstractmethod
    def fetch_changes(self, since: datetime, until: datetime) -> List[ChangeLogRow]:
        """Return parent-entity rows with since <= log_time < until, oldest first."""

    @abstractmethod
    def find_correlated_children(
        self,
        parent_id: str,
        hotel_id: int,
        around: datetime,
        window: timedelta
    ) -> List[ChangeLogRow]:
        """Return child DELETE rows of `parent_id` logged within +/- window of `around`."""


class DispatchQueueRepository(ABC):
    """Read access to the outbound dispatch queue."""

    @abstractmethod
    def find_dispatch(
        self,
        hotel_id: int,
        service_pattern: str,
        after: datetime,
        until: datetime
    ) -> Optional[DispatchRecord]:
        """Return the first dispatch with after < created_at <= until, or None."""

    @abstractmethod
    def find_nearest_dispatch(
        self,
        hotel_id: int,
        service_pattern: str,
        reference: datetime,
        start: datetime,
        end: datetime
    ) -> Optional[DispatchRecord]:
        """Return the dispatch in (start, end] closest to `reference`, or None."""


class OutcomeRepository(ABC):
    """Pipeline-owned dispatch outcome log."""

    @abstractmethod
    def record_outcome(self, outcome: DispatchOutcome) -> None:
        """Append one dispatch attempt."""

    @abstractmethod
    def find_remediated_log_ids(self, log_ids: Iterable[int]) -> Set[int]:
        """Return the subset of log ids covered by a successful remediation."""

    @abstractmethod
    def find_permanent_failures(self, since: datetime) -> List[Dict[str, Any]]:
        """Return permanently failed attempts since `since` not later remediated."""


class RunLockRepository(ABC):
    """Run-scoped locks preventing overlapping runs of one cadence."""

    @abstractmethod
    def acquire_lock(self, lock_key: str, owner: str, ttl_seconds: float) -> bool:
        """Take the lock unless a live holder exists; True when acquired."""

    @abstractmethod
    def release_lock(self, lock_key: str, owner: str) -> None:
        """Release the lock if still held by `owner`."""

    @abstractmethod
    def list_locks(self) -> List[Dict[str, Any]]:
        """Return currently held locks."""


class RunLogRepository(ABC):
    """Pipeline-owned run history."""

    @abstractmethod
    def record_run(self, report: Dict[str, Any]) -> None:
        """Persist one run report."""

    @abstractmethod
    def recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Return the most recent run reports, newest first."""


class PostgresRepository(
    ChangeLogRepository,
    DispatchQueueRepository,
    OutcomeRepository,
    RunLockRepository,
    RunLogRepository
):
    """
    PostgreSQL implementation of all pipeline repositories.

    Uses a thread-safe connection pool since gap detection and dispatch run
    on a worker pool. Every session carries a statement_timeout so a slow
    query cannot outlive the run timeout.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "pms",
        user: str = "postgres",
        password: str = "postgres",
        statement_timeout_ms: int = 30000,
        min_connections: int = 1,
        max_connections: int = 8,
        naming: Optional[TableNaming] = None,
        pool: Optional[ThreadedConnectionPool] = None
    ):
        """
        Initialize the repository.

        Args:
            host: PostgreSQL host
            port: PostgreSQL port
            database: Database name
            user: Username
            password: Password
            statement_timeout_ms: Per-statement timeout in milliseconds
            min_connections: Minimum pooled connections
            max_connections: Maximum pooled connections
            naming: Audit log table naming convention
            pool: Pre-built pool (mainly for tests)
        """
        self.naming = naming or TableNaming()
        self.statement_timeout_ms = statement_timeout_ms

        if pool is None:
            logger.info(f"Connecting to PostgreSQL at {host}:{port}/{database}")
            pool = ThreadedConnectionPool(
                min_connections,
                max_connections,
                host=host,
                port=port,
                dbname=database,
                user=user,
                password=password,
                options=f"-c statement_timeout={statement_timeout_ms}"
            )
        self.pool = pool

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        conn = self.pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def close(self) -> None:
        """Close all pooled connections."""
        self.pool.closeall()
        logger.info("PostgreSQL pool closed")

    def ensure_schema(self) -> None:
        """Create pipeline-owned tables if missing."""
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_DDL)
        logger.info("Reconciliation schema ensured")

    # Audit log

    def fetch_changes(self, since: datetime, until: datetime) -> List[ChangeLogRow]:
        prefix = self.naming.parent_prefix.replace("_", "\\_")
        max_length = len(self.naming.parent_prefix) + self.naming.max_suffix_length

        query = """
            SELECT id AS log_id, log_time, action, table_name, record_id, changes
            FROM logs_reservation
            WHERE log_time >= %s
              AND log_time < %s
              AND table_name LIKE %s
              AND LENGTH(table_name) <= %s
            ORDER BY log_time, id
        """

        with self._cursor() as cursor:
            cursor.execute(query, (since, until, prefix + "%", max_length))
            rows = [self._to_change_row(row) for row in cursor.fetchall()]

        logger.info(f"Fetched {len(rows)} audit log rows between {since.isoformat()} and {until.isoformat()}")
        return rows

    def find_correlated_children(
        self,
        parent_id: str,
        hotel_id: int,
        around: datetime,
        window: timedelta
    ) -> List[ChangeLogRow]:
        query = """
            SELECT id AS log_id, log_time, action, table_name, record_id, changes
            FROM logs_reservation
            WHERE table_name = %s
              AND action = 'DELETE'
              AND changes->>'reservation_id' = %s
              AND log_time BETWEEN %s AND %s
            ORDER BY log_time, id
        """
        params = (
            self.naming.child_table(hotel_id),
            str(parent_id),
            around - window,
            around + window,
        )

        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = [self._to_change_row(row) for row in cursor.fetchall()]

        logger.debug(f"Found {len(rows)} correlated child deletes for reservation {parent_id}")
        return rows

    # Dispatch queue

    def find_dispatch(
        self,
        hotel_id: int,
        service_pattern: str,
        after: datetime,
        until: datetime
    ) -> Optional[DispatchRecord]:
        query = """
            SELECT hotel_id, created_at, current_request_id AS request_id, service_name, status
            FROM ota_xml_queue
            WHERE hotel_id = %s
              AND created_at > %s
              AND created_at <= %s
              AND service_name LIKE %s
            ORDER BY created_at ASC
            LIMIT 1
        """

        with self._cursor() as cursor:
            cursor.execute(query, (hotel_id, after, until, service_pattern))
            row = cursor.fetchone()

        return self._to_dispatch_record(row) if row else None

    def find_nearest_dispatch(
        self,
        hotel_id: int,
        service_pattern: str,
        reference: datetime,
        start: datetime,
        end: datetime
    ) -> Optional[DispatchRecord]:
        query = """
            SELECT hotel_id, created_at, current_request_id AS request_id, service_name, status
            FROM ota_xml_queue
            WHERE hotel_id = %s
              AND created_at > %s
              AND created_at <= %s
              AND service_name LIKE %s
            ORDER BY ABS(EXTRACT(EPOCH FROM (created_at - %s)))
            LIMIT 1
        """

        with self._cursor() as cursor:
            cursor.execute(query, (hotel_id, start, end, service_pattern, reference))
            row = cursor.fetchone()

        return self._to_dispatch_record(row) if row else None

    # Outcome log

    def record_outcome(self, outcome: DispatchOutcome) -> None:
        query = """
            INSERT INTO inventory_remediation_outcomes (
                run_id, hotel_id, check_in, check_out, log_ids, members,
                attempt, result, status_code, error, dry_run, attempted_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            outcome.run_id,
            outcome.hotel_id,
            outcome.check_in,
            outcome.check_out,
            list(outcome.log_ids),
            Json(list(outcome.members)),
            outcome.attempt,
            outcome.result,
            outcome.status_code,
            outcome.error,
            outcome.dry_run,
            outcome.attempted_at,
        )

        with self._cursor() as cursor:
            cursor.execute(query, params)

    def find_remediated_log_ids(self, log_ids: Iterable[int]) -> Set[int]:
        ids = sorted(set(log_ids))
        if not ids:
            return set()

        query = """
            SELECT DISTINCT unnest(log_ids) AS log_id
            FROM inventory_remediation_outcomes
            WHERE result = %s
              AND dry_run = FALSE
              AND log_ids && %s::bigint[]
        """

        with self._cursor() as cursor:
            cursor.execute(query, (DispatchOutcome.SUCCESS, ids))
            found = {row["log_id"] for row in cursor.fetchall()}

        return found & set(ids)

    def find_permanent_failures(self, since: datetime) -> List[Dict[str, Any]]:
        query = """
            SELECT f.id, f.run_id, f.hotel_id, f.check_in, f.check_out, f.log_ids,
                   f.members, f.status_code, f.error, f.attempted_at
            FROM inventory_remediation_outcomes f
            WHERE f.result = %s
              AND f.attempted_at >= %s
              AND NOT EXISTS (
                  SELECT 1 FROM inventory_remediation_outcomes s
                  WHERE s.result = %s
                    AND s.dry_run = FALSE
                    AND s.hotel_id = f.hotel_id
                    AND s.check_in <= f.check_in
                    AND s.check_out >= f.check_out
                    AND s.attempted_at > f.attempted_at
              )
            ORDER BY f.attempted_at
        """

        with self._cursor() as cursor:
            cursor.execute(query, (DispatchOutcome.PERMANENT_FAILURE, since, DispatchOutcome.SUCCESS))
            return [dict(row) for row in cursor.fetchall()]

    # Run locks

    def acquire_lock(self, lock_key: str, owner: str, ttl_seconds: float) -> bool:
        query = """
            INSERT INTO reconciliation_run_locks (lock_key, owner, acquired_at, expires_at)
            VALUES (%s, %s, NOW(), NOW() + %s * INTERVAL '1 second')
            ON CONFLICT (lock_key) DO UPDATE
                SET owner = EXCLUDED.owner,
                    acquired_at = EXCLUDED.acquired_at,
                    expires_at = EXCLUDED.expires_at
                WHERE reconciliation_run_locks.expires_at < NOW()
            RETURNING owner
        """

        with self._cursor() as cursor:
            cursor.execute(query, (lock_key, owner, ttl_seconds))
            acquired = cursor.fetchone() is not None

        logger.debug(f"Lock {lock_key} {'acquired' if acquired else 'busy'} for {owner}")
        return acquired

    def release_lock(self, lock_key: str, owner: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM reconciliation_run_locks WHERE lock_key = %s AND owner = %s",
                (lock_key, owner)
            )

    def list_locks(self) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT lock_key, owner, acquired_at, expires_at
                FROM reconciliation_run_locks
                WHERE expires_at >= NOW()
                ORDER BY acquired_at
            """)
            return [dict(row) for row in cursor.fetchall()]

    # Run log

    def record_run(self, report: Dict[str, Any]) -> None:
        query = """
            INSERT INTO reconciliation_runs (
                run_id, cadence, window_start, window_end, status, started_at,
                finished_at, success_rate, query_ms, budget_exceeded, details
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (run_id) DO UPDATE
                SET status = EXCLUDED.status,
                    finished_at = EXCLUDED.finished_at,
                    success_rate = EXCLUDED.success_rate,
                    query_ms = EXCLUDED.query_ms,
                    budget_exceeded = EXCLUDED.budget_exceeded,
                    details = EXCLUDED.details
        """
        params = (
            report["run_id"],
            report["cadence"],
            report["window_start"],
            report["window_end"],
            report["status"],
            report["started_at"],
            report.get("finished_at"),
            report.get("success_rate"),
            report.get("query_ms"),
            report.get("budget_exceeded", False),
            Json(report, dumps=lambda value: json.dumps(value, default=str)),
        )

        with self._cursor() as cursor:
            cursor.execute(query, params)

    def recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute("""
                SELECT run_id, cadence, window_start, window_end, status, started_at,
                       finished_at, success_rate, query_ms, budget_exceeded
                FROM reconciliation_runs
                ORDER BY started_at DESC
                LIMIT %s
            """, (limit,))
            return [dict(row) for row in cursor.fetchall()]

    @staticmethod
    def _to_change_row(row: Dict[str, Any]) -> ChangeLogRow:
        return ChangeLogRow(
            log_id=row["log_id"],
            log_time=row["log_time"],
            action=row["action"],
            entity_table=row["table_name"],
            changes=row["changes"],
            record_id=str(row["record_id"]) if row.get("record_id") is not None else None,
        )

    @staticmethod
    def _to_dispatch_record(row: Dict[str, Any]) -> DispatchRecord:
        return DispatchRecord(
            hotel_id=row["hotel_id"],
            created_at=row["created_at"],
            request_id=row.get("request_id"),
            service_name=row["service_name"],
            status=row.get("status"),
        )


def connect_repository(**params: Any) -> PostgresRepository:
    """
    Build a PostgresRepository, surfacing connection errors clearly.

    Raises:
        psycopg2.OperationalError: If the database is unreachable
    """
    try:
        return PostgresRepository(**params)
    except psycopg2.OperationalError as e:
        logger.error(f"Failed to connect to PostgreSQL: {e}")
        raise
