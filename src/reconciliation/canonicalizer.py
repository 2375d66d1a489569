"""
Change Canonicalizer for Inventory Reconciliation

Normalizes raw audit log rows into CanonicalChange records. The JSON shape
of `changes` depends on the action: INSERT/DELETE carry a flat snapshot,
UPDATE carries {"old": {...}, "new": {...}}. The shape is decoded once into
a ChangeDelta here; nothing downstream branches on the raw JSON again.
"""

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from src.reconciliation.errors import MalformedChangeError
from src.reconciliation.models import (
    Action,
    CanonicalChange,
    ChangeDelta,
    ChangeLogRow,
    DeleteDelta,
    EntityKind,
    InsertDelta,
    UpdateDelta,
)

logger = logging.getLogger(__name__)

CANCELLED_STATUS = "cancelled"


@dataclass(frozen=True)
class TableNaming:
    """
    Audit log table naming convention.

    Tenant tables are named <prefix><hotel_id>, where the hotel suffix is at
    most `max_suffix_length` digits (e.g. reservations_25).
    """

    parent_prefix: str = "reservations_"
    child_prefix: str = "reservation_details_"
    max_suffix_length: int = 3

    def parse(self, table_name: str) -> Optional[Tuple[EntityKind, int]]:
        """
        Split a table name into entity kind and hotel id.

        Returns:
            (EntityKind, hotel_id) or None if the name does not match
        """
        suffix = r"(\d{1,%d})" % self.max_suffix_length
        for prefix, kind in (
            (self.parent_prefix, EntityKind.RESERVATION),
            (self.child_prefix, EntityKind.RESERVATION_DETAIL),
        ):
            match = re.fullmatch(re.escape(prefix) + suffix, table_name or "")
            if match:
                return kind, int(match.group(1))
        return None

    def child_table(self, hotel_id: int) -> str:
        return f"{self.child_prefix}{hotel_id}"


class Canonicalizer:
    """
    Converts ChangeLogRow instances into CanonicalChange records.

    Discards (malformed JSON, unknown action, unexpected table, unusable
    hotel or date values) raise MalformedChangeError from `canonicalize`;
    `canonicalize_batch` counts them and keeps going.
    """

    def __init__(self, naming: Optional[TableNaming] = None):
        """
        Initialize the canonicalizer.

        Args:
            naming: Table naming convention (defaults to reservations_<hotel>)
        """
        self.naming = naming or TableNaming()
        logger.debug("Initialized Canonicalizer")

    def canonicalize(self, row: ChangeLogRow) -> CanonicalChange:
        """
        Canonicalize a single audit log row.

        Args:
            row: Raw audit log row

        Returns:
            CanonicalChange for the row

        Raises:
            MalformedChangeError: If the row must be discarded
        """
        parsed_table = self.naming.parse(row.entity_table)
        if parsed_table is None:
            raise MalformedChangeError(
                "unexpected_table",
                f"Table '{row.entity_table}' does not match the tenant naming convention",
                row.log_id
            )
        entity, table_hotel_id = parsed_table

        action = self._parse_action(row)
        delta = self.decode_delta(action, row.changes, row.log_id)
        relevant = is_relevant(delta)

        if isinstance(delta, UpdateDelta):
            old, new = delta.old, delta.new
            check_in = _earliest(self._date(old, "check_in", row), self._date(new, "check_in", row))
            check_out = _latest(self._date(old, "check_out", row), self._date(new, "check_out", row))
            status = new.get("status")
            hotel_value = _coalesce(new.get("hotel_id"), old.get("hotel_id"))
            client_id = _coalesce(new.get("reservation_client_id"), old.get("reservation_client_id"))
            record_id = _coalesce(new.get("id"), old.get("id"), row.record_id)
            parent_id = _coalesce(new.get("reservation_id"), old.get("reservation_id"))
            if entity == EntityKind.RESERVATION_DETAIL:
                check_in = _earliest(self._date(old, "date", row), self._date(new, "date", row))
                check_out = _latest(self._date(old, "date", row), self._date(new, "date", row))
        else:
            values = delta.values
            check_in = self._date(values, "check_in", row)
            check_out = self._date(values, "check_out", row)
            status = values.get("status")
            hotel_value = values.get("hotel_id")
            client_id = values.get("reservation_client_id")
            record_id = _coalesce(values.get("id"), row.record_id)
            parent_id = values.get("reservation_id")
            if entity == EntityKind.RESERVATION_DETAIL:
                check_in = check_out = self._date(values, "date", row)

        hotel_id = self._hotel_id(hotel_value, table_hotel_id, row)

        return CanonicalChange(
            log_id=row.log_id,
            log_time=row.log_time,
            hotel_id=hotel_id,
            record_id=_as_text(record_id),
            check_in=check_in,
            check_out=check_out,
            status=status,
            client_id=_as_text(client_id),
            action=action,
            relevant=relevant,
            entity_table=row.entity_table,
            entity=entity,
            parent_id=_as_text(parent_id),
        )

    def canonicalize_batch(
        self,
        rows: Iterable[ChangeLogRow]
    ) -> Tuple[List[CanonicalChange], Dict[str, int]]:
        """
        Canonicalize a batch, discarding bad rows without aborting.

        Args:
            rows: Raw audit log rows

        Returns:
            Tuple of (canonical changes, discard counts by reason)
        """
        changes = []
        discards: Counter = Counter()

        for row in rows:
            try:
                changes.append(self.canonicalize(row))
            except MalformedChangeError as e:
                discards[e.reason] += 1
                logger.warning(f"Discarded log {row.log_id} ({e.reason}): {e}", extra={"log_id": row.log_id})
            except Exception as e:
                discards["unexpected_error"] += 1
                logger.exception(
                    f"Unexpected error canonicalizing log {row.log_id}: {e}", extra={"log_id": row.log_id}
                )

        if discards:
            logger.info(f"Canonicalized {len(changes)} rows, discarded {sum(discards.values())}: {dict(discards)}")
        else:
            logger.debug(f"Canonicalized {len(changes)} rows")

        return changes, dict(discards)

    def decode_delta(self, action: Action, changes: Any, log_id: Optional[int] = None) -> ChangeDelta:
        """
        Decode the raw `changes` payload into a ChangeDelta.

        Args:
            action: Parsed action
            changes: JSON string or already-decoded mapping
            log_id: Audit log id, for error reporting

        Returns:
            InsertDelta, UpdateDelta or DeleteDelta

        Raises:
            MalformedChangeError: If the payload is not valid for the action
        """
        if isinstance(changes, (str, bytes)):
            try:
                changes = json.loads(changes)
            except ValueError as e:
                raise MalformedChangeError("malformed_json", f"Invalid JSON in changes: {e}", log_id) from e

        if not isinstance(changes, dict):
            raise MalformedChangeError(
                "malformed_json",
                f"Expected a JSON object, got {type(changes).__name__}",
                log_id
            )

        if action == Action.UPDATE:
            old = changes.get("old")
            new = changes.get("new")
            if not isinstance(old, dict) or not isinstance(new, dict):
                raise MalformedChangeError(
                    "malformed_json",
                    "UPDATE changes must contain 'old' and 'new' objects",
                    log_id
                )
            return UpdateDelta(old=old, new=new)

        if action == Action.INSERT:
            return InsertDelta(values=changes)

        return DeleteDelta(values=changes)

    def _parse_action(self, row: ChangeLogRow) -> Action:
        try:
            return Action(str(row.action).upper())
        except ValueError:
            raise MalformedChangeError("unknown_action", f"Unknown action '{row.action}'", row.log_id)

    def _date(self, values: Dict[str, Any], key: str, row: ChangeLogRow) -> Optional[date]:
        try:
            return parse_date(values.get(key))
        except ValueError as e:
            raise MalformedChangeError("invalid_date", f"Invalid {key}: {e}", row.log_id) from e

    def _hotel_id(self, value: Any, table_hotel_id: int, row: ChangeLogRow) -> int:
        if value is None:
            return table_hotel_id
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise MalformedChangeError("missing_hotel", f"Invalid hotel_id {value!r}", row.log_id) from e


def is_relevant(delta: ChangeDelta) -> bool:
    """
    Decide whether a change can affect channel inventory.

    Inserts and deletes always can. Updates only when they move the stay
    (check_in, check_out), move it to another hotel, or flip the status into
    or out of 'cancelled'.

    Args:
        delta: Decoded change delta

    Returns:
        True if the change must be propagated to the channel
    """
    if not isinstance(delta, UpdateDelta):
        return True

    old, new = delta.old, delta.new

    for key in ("check_in", "check_out"):
        if not _values_equal(_normalize_value(old.get(key)), _normalize_value(new.get(key))):
            return True

    if not _values_equal(_normalize_hotel(old.get("hotel_id")), _normalize_hotel(new.get("hotel_id"))):
        return True

    old_status = old.get("status")
    new_status = new.get("status")
    if old_status != new_status and CANCELLED_STATUS in (old_status, new_status):
        return True

    return False


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a date from a JSON value.

    Accepts ISO dates, ISO timestamps (the date part is used), date and
    datetime objects. Empty values map to None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _normalize_value(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return value.normalize()
    if isinstance(value, (date, datetime)):
        return parse_date(value).isoformat()
    if isinstance(value, str) and len(value) >= 10 and value[4:5] == "-":
        try:
            return parse_date(value).isoformat()
        except ValueError:
            return value
    return value


def _normalize_hotel(value: Any) -> Any:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def _values_equal(value1: Any, value2: Any) -> bool:
    if value1 is None and value2 is None:
        return True
    if value1 is None or value2 is None:
        return False
    return value1 == value2


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _earliest(first: Optional[date], second: Optional[date]) -> Optional[date]:
    candidates = [d for d in (first, second) if d is not None]
    return min(candidates) if candidates else None


def _latest(first: Optional[date], second: Optional[date]) -> Optional[date]:
    candidates = [d for d in (first, second) if d is not None]
    return max(candidates) if candidates else None


def _as_text(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
