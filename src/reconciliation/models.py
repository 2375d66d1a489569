"""
Data Model for Inventory Reconciliation

Typed records flowing through the pipeline:

    ChangeLogRow -> CanonicalChange -> (ReconstructedDeletion)
        -> MissingTrigger -> RemediationGroup -> DispatchOutcome

ChangeLogRow and DispatchRecord mirror external, append-only tables. Every
other type is recomputed per run; only DispatchOutcome is persisted.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Action(str, Enum):
    """Audit log action types."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityKind(str, Enum):
    """Entity kinds encoded in the audit log table name."""
    RESERVATION = "reservation"
    RESERVATION_DETAIL = "reservation_detail"


class Resolution(str, Enum):
    """Outcome of cascade-delete correlation."""
    RESOLVED = "resolved"
    PARTIAL = "partial"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ChangeLogRow:
    """Raw audit log row as read from logs_reservation."""

    log_id: int
    log_time: datetime
    action: str
    entity_table: str
    changes: Any
    record_id: Optional[str] = None


@dataclass(frozen=True)
class InsertDelta:
    """Flat column -> value snapshot of an inserted row."""
    values: Dict[str, Any]


@dataclass(frozen=True)
class UpdateDelta:
    """Before and after snapshots of an updated row."""
    old: Dict[str, Any]
    new: Dict[str, Any]


@dataclass(frozen=True)
class DeleteDelta:
    """Flat column -> value snapshot of a deleted row."""
    values: Dict[str, Any]


ChangeDelta = Union[InsertDelta, UpdateDelta, DeleteDelta]


@dataclass(frozen=True)
class CanonicalChange:
    """
    Uniform view of one audit log row.

    For UPDATE rows check_in/check_out span both the old and the new stay,
    so the channel is told about every date the reservation ever touched.
    """

    log_id: int
    log_time: datetime
    hotel_id: int
    record_id: Optional[str]
    check_in: Optional[date]
    check_out: Optional[date]
    status: Optional[str]
    client_id: Optional[str]
    action: Action
    relevant: bool
    entity_table: str
    entity: EntityKind = EntityKind.RESERVATION
    parent_id: Optional[str] = None

    @property
    def is_parent_delete(self) -> bool:
        return self.action == Action.DELETE and self.entity == EntityKind.RESERVATION

    @property
    def log_ids(self) -> Tuple[int, ...]:
        return (self.log_id,)

    @property
    def is_resolved(self) -> bool:
        return self.check_in is not None and self.check_out is not None


@dataclass(frozen=True)
class ReconstructedDeletion:
    """
    Date range of a parent delete rebuilt from its cascaded child deletes.

    An UNRESOLVED deletion has no range and must go to manual review.
    """

    parent: CanonicalChange
    check_in: Optional[date]
    check_out: Optional[date]
    resolution: Resolution
    child_log_ids: Tuple[int, ...] = ()
    expected_children: Optional[int] = None
    matched_children: int = 0

    @property
    def log_id(self) -> int:
        return self.parent.log_id

    @property
    def log_time(self) -> datetime:
        return self.parent.log_time

    @property
    def hotel_id(self) -> int:
        return self.parent.hotel_id

    @property
    def action(self) -> Action:
        return self.parent.action

    @property
    def status(self) -> Optional[str]:
        return self.parent.status

    @property
    def client_id(self) -> Optional[str]:
        return self.parent.client_id

    @property
    def relevant(self) -> bool:
        return self.parent.relevant

    @property
    def log_ids(self) -> Tuple[int, ...]:
        return (self.parent.log_id,) + self.child_log_ids

    @property
    def is_resolved(self) -> bool:
        return self.resolution != Resolution.UNRESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "log_id": self.log_id,
            "hotel_id": self.hotel_id,
            "record_id": self.parent.record_id,
            "log_time": self.log_time.isoformat(),
            "resolution": self.resolution.value,
            "check_in": _iso(self.check_in),
            "check_out": _iso(self.check_out),
            "child_log_ids": list(self.child_log_ids),
            "expected_children": self.expected_children,
            "matched_children": self.matched_children,
        }


CorrelatedChange = Union[CanonicalChange, ReconstructedDeletion]


@dataclass(frozen=True)
class DispatchRecord:
    """Row of the outbound dispatch queue (ota_xml_queue)."""

    hotel_id: int
    created_at: datetime
    request_id: Optional[str]
    service_name: str
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hotel_id": self.hotel_id,
            "created_at": self.created_at.isoformat(),
            "request_id": self.request_id,
            "service_name": self.service_name,
            "status": self.status,
        }


@dataclass(frozen=True)
class MissingTrigger:
    """A relevant, resolved change the channel was never notified about."""

    hotel_id: int
    check_in: date
    check_out: date
    log_ids: Tuple[int, ...]
    log_time: datetime
    action: str
    client_id: Optional[str] = None
    status: Optional[str] = None
    nearby_dispatch: Optional[DispatchRecord] = None
    possible_silent_skip: bool = False

    def sort_key(self) -> Tuple:
        return (self.hotel_id, self.check_in, self.check_out, self.log_ids, self.log_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hotel_id": self.hotel_id,
            "check_in": self.check_in.isoformat(),
            "check_out": self.check_out.isoformat(),
            "log_ids": list(self.log_ids),
            "log_time": self.log_time.isoformat(),
            "action": self.action,
            "client_id": self.client_id,
            "status": self.status,
            "possible_silent_skip": self.possible_silent_skip,
            "nearby_dispatch": self.nearby_dispatch.to_dict() if self.nearby_dispatch else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MissingTrigger":
        """Rebuild a trigger from its outcome-log provenance."""
        log_time = data["log_time"]
        if isinstance(log_time, str):
            log_time = datetime.fromisoformat(log_time)
        return cls(
            hotel_id=int(data["hotel_id"]),
            check_in=_as_date(data["check_in"]),
            check_out=_as_date(data["check_out"]),
            log_ids=tuple(int(i) for i in data.get("log_ids", [])),
            log_time=log_time,
            action=data.get("action", "UNKNOWN"),
            client_id=data.get("client_id"),
            status=data.get("status"),
            possible_silent_skip=bool(data.get("possible_silent_skip", False)),
        )


@dataclass
class RemediationGroup:
    """Merged, disjoint date range of missing triggers for one hotel."""

    hotel_id: int
    check_in: date
    check_out: date
    members: List[MissingTrigger] = field(default_factory=list)

    @property
    def log_ids(self) -> List[int]:
        ids = set()
        for member in self.members:
            ids.update(member.log_ids)
        return sorted(ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hotel_id": self.hotel_id,
            "check_in": self.check_in.isoformat(),
            "check_out": self.check_out.isoformat(),
            "members": [m.to_dict() for m in self.members],
        }


@dataclass(frozen=True)
class DispatchOutcome:
    """One remediation attempt, as written to the outcome log."""

    hotel_id: int
    check_in: date
    check_out: date
    log_ids: Tuple[int, ...]
    attempt: int
    result: str
    attempted_at: datetime
    status_code: Optional[int] = None
    error: Optional[str] = None
    run_id: Optional[str] = None
    members: Tuple[Dict[str, Any], ...] = ()
    dry_run: bool = False

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    DRY_RUN = "dry_run"


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _as_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])
