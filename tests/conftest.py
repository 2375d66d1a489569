"""
Pytest configuration and shared fixtures.

Provides in-memory fakes of the pipeline repositories so unit tests run
without PostgreSQL, plus builders for audit log rows and dispatch records.
"""

import json
import re
from datetime import datetime, timedelta, timezone

import pytest

from src.reconciliation.canonicalizer import TableNaming
from src.reconciliation.models import ChangeLogRow, DispatchOutcome, DispatchRecord
from src.reconciliation.repository import (
    ChangeLogRepository,
    DispatchQueueRepository,
    OutcomeRepository,
    RunLockRepository,
    RunLogRepository,
)
from src.utils.correlation import clear_correlation_id


BASE_TIME = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)


def like_to_regex(pattern):
    """Translate a SQL LIKE pattern into an anchored regex."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


class FakeChangeLog(ChangeLogRepository):
    """In-memory audit log."""

    def __init__(self, rows=None, naming=None):
        self.rows = list(rows or [])
        self.naming = naming or TableNaming()
        self.fetch_calls = []
        self.child_calls = []

    def add(self, *rows):
        self.rows.extend(rows)

    def fetch_changes(self, since, until):
        self.fetch_calls.append((since, until))
        selected = [
            row for row in self.rows
            if since <= row.log_time < until
            and row.entity_table.startswith(self.naming.parent_prefix)
        ]
        return sorted(selected, key=lambda r: (r.log_time, r.log_id))

    def find_correlated_children(self, parent_id, hotel_id, around, window):
        self.child_calls.append(parent_id)
        table = self.naming.child_table(hotel_id)
        result = []
        for row in self.rows:
            if row.entity_table != table or row.action != "DELETE":
                continue
            try:
                changes = json.loads(row.changes) if isinstance(row.changes, str) else row.changes
            except ValueError:
                continue
            if str(changes.get("reservation_id")) != str(parent_id):
                continue
            if around - window <= row.log_time <= around + window:
                result.append(row)
        return sorted(result, key=lambda r: (r.log_time, r.log_id))


class FakeDispatchQueue(DispatchQueueRepository):
    """In-memory outbound dispatch queue."""

    def __init__(self, records=None):
        self.records = list(records or [])

    def add(self, *records):
        self.records.extend(records)

    def _matching(self, hotel_id, service_pattern, start, end):
        regex = like_to_regex(service_pattern)
        return [
            r for r in self.records
            if r.hotel_id == hotel_id and start < r.created_at <= end and regex.match(r.service_name)
        ]

    def find_dispatch(self, hotel_id, service_pattern, after, until):
        matches = sorted(self._matching(hotel_id, service_pattern, after, until), key=lambda r: r.created_at)
        return matches[0] if matches else None

    def find_nearest_dispatch(self, hotel_id, service_pattern, reference, start, end):
        matches = self._matching(hotel_id, service_pattern, start, end)
        if not matches:
            return None
        return min(matches, key=lambda r: abs((r.created_at - reference).total_seconds()))


class FakeOutcomes(OutcomeRepository):
    """In-memory outcome log."""

    def __init__(self):
        self.outcomes = []

    def record_outcome(self, outcome):
        self.outcomes.append(outcome)

    def find_remediated_log_ids(self, log_ids):
        wanted = set(log_ids)
        remediated = set()
        for outcome in self.outcomes:
            if outcome.result == DispatchOutcome.SUCCESS and not outcome.dry_run:
                remediated.update(outcome.log_ids)
        return remediated & wanted

    def find_permanent_failures(self, since):
        failures = []
        for failed in self.outcomes:
            if failed.result != DispatchOutcome.PERMANENT_FAILURE or failed.attempted_at < since:
                continue
            repaired = any(
                s.result == DispatchOutcome.SUCCESS
                and not s.dry_run
                and s.hotel_id == failed.hotel_id
                and s.check_in <= failed.check_in
                and s.check_out >= failed.check_out
                and s.attempted_at > failed.attempted_at
                for s in self.outcomes
            )
            if not repaired:
                failures.append({
                    "run_id": failed.run_id,
                    "hotel_id": failed.hotel_id,
                    "check_in": failed.check_in,
                    "check_out": failed.check_out,
                    "log_ids": list(failed.log_ids),
                    "members": list(failed.members),
                    "status_code": failed.status_code,
                    "error": failed.error,
                    "attempted_at": failed.attempted_at,
                })
        return failures

    def results(self):
        return [o.result for o in self.outcomes]


class FakeLocks(RunLockRepository):
    """In-memory run locks with TTL."""

    def __init__(self, clock=None):
        self.locks = {}
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def acquire_lock(self, lock_key, owner, ttl_seconds):
        now = self.clock()
        held = self.locks.get(lock_key)
        if held is not None and held["expires_at"] >= now:
            return False
        self.locks[lock_key] = {
            "lock_key": lock_key,
            "owner": owner,
            "acquired_at": now,
            "expires_at": now + timedelta(seconds=ttl_seconds),
        }
        return True

    def release_lock(self, lock_key, owner):
        held = self.locks.get(lock_key)
        if held is not None and held["owner"] == owner:
            del self.locks[lock_key]

    def list_locks(self):
        now = self.clock()
        return [dict(lock) for lock in self.locks.values() if lock["expires_at"] >= now]


class FakeRunLog(RunLogRepository):
    """In-memory run history."""

    def __init__(self):
        self.runs = []

    def record_run(self, report):
        self.runs.append(report)

    def recent_runs(self, limit=20):
        return list(reversed(self.runs))[:limit]


@pytest.fixture(autouse=True)
def reset_correlation_id():
    """Ensure no correlation id leaks between tests."""
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.fixture
def base_time():
    """Reference log time for tests."""
    return BASE_TIME


@pytest.fixture
def change_log():
    return FakeChangeLog()


@pytest.fixture
def dispatch_queue():
    return FakeDispatchQueue()


@pytest.fixture
def outcomes():
    return FakeOutcomes()


@pytest.fixture
def locks():
    return FakeLocks()


@pytest.fixture
def make_locks():
    """Factory for run locks driven by an explicit clock."""
    return FakeLocks


@pytest.fixture
def run_log():
    return FakeRunLog()


@pytest.fixture
def make_row():
    """Factory for audit log rows; dict changes are serialized to JSON."""
    def _make(log_id, log_time, action, changes, hotel_id=25, table=None, record_id=None):
        if isinstance(changes, dict):
            changes = json.dumps(changes, default=str)
        return ChangeLogRow(
            log_id=log_id,
            log_time=log_time,
            action=action,
            entity_table=table or f"reservations_{hotel_id}",
            changes=changes,
            record_id=record_id,
        )
    return _make


@pytest.fixture
def make_child_delete(make_row):
    """Factory for cascaded reservation_details DELETE rows (one per night)."""
    def _make(log_id, log_time, reservation_id, night, hotel_id=25):
        return make_row(
            log_id,
            log_time,
            "DELETE",
            {"id": log_id * 10, "reservation_id": reservation_id, "hotel_id": hotel_id, "date": night},
            table=f"reservation_details_{hotel_id}",
        )
    return _make


@pytest.fixture
def make_dispatch():
    """Factory for dispatch queue records."""
    def _make(hotel_id, created_at, service_name="OTA_HotelStockNotif", request_id=None):
        return DispatchRecord(
            hotel_id=hotel_id,
            created_at=created_at,
            request_id=request_id or f"req-{hotel_id}-{int(created_at.timestamp())}",
            service_name=service_name,
            status="sent",
        )
    return _make
