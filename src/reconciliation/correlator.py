"""
Cascade Correlator for Inventory Reconciliation

A parent reservation DELETE usually carries no usable date range: the stay
lives in the child reservation_details rows, which the database deletes in
the same cascade. This module rebuilds the parent's range from the child
DELETE rows logged around the same time.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from src.reconciliation.canonicalizer import Canonicalizer
from src.reconciliation.errors import MalformedChangeError
from src.reconciliation.models import (
    Action,
    CanonicalChange,
    CorrelatedChange,
    EntityKind,
    ReconstructedDeletion,
    Resolution,
)
from src.reconciliation.repository import ChangeLogRepository

logger = logging.getLogger(__name__)


class CascadeCorrelator:
    """
    Rebuilds date ranges of parent deletes from cascaded child deletes.

    Children match when their reservation_id equals the parent's id, they
    belong to the same hotel and were logged within +/- `window` of the
    parent row.
    """

    def __init__(
        self,
        repository: ChangeLogRepository,
        canonicalizer: Optional[Canonicalizer] = None,
        window: timedelta = timedelta(minutes=10)
    ):
        """
        Initialize the correlator.

        Args:
            repository: Audit log repository used for the child lookup
            canonicalizer: Canonicalizer for child rows
            window: Max distance between parent and child log_time
        """
        self.repository = repository
        self.canonicalizer = canonicalizer or Canonicalizer()
        self.window = window

        logger.debug(f"Initialized CascadeCorrelator (window={window})")

    def correlate(self, change: CanonicalChange) -> CorrelatedChange:
        """
        Correlate a change with its cascaded child deletes.

        Non-parent-DELETE changes pass through unchanged.

        Args:
            change: Canonical change

        Returns:
            The change itself, or a ReconstructedDeletion for parent deletes
        """
        if not change.is_parent_delete:
            return change

        if change.record_id is None:
            logger.warning(
                f"Parent delete {change.log_id} has no reservation id, cannot correlate",
                extra={"log_id": change.log_id, "hotel_id": change.hotel_id}
            )
            return self._unresolved(change)

        rows = self.repository.find_correlated_children(
            change.record_id,
            change.hotel_id,
            change.log_time,
            self.window
        )
        children = self._matching_children(change, rows)

        if not children:
            logger.warning(
                f"Unresolved delete: reservation {change.record_id} (log {change.log_id}, "
                f"hotel {change.hotel_id}) has no correlated child deletes",
                extra={"log_id": change.log_id, "hotel_id": change.hotel_id}
            )
            return self._unresolved(change)

        # Each child row covers a single night: check_in == check_out == date
        check_in = min(child.check_in for child in children)
        check_out = max(child.check_out for child in children)

        expected = self._expected_children(change)
        distinct_dates = {child.check_in for child in children}

        if expected is not None and len(distinct_dates) < expected:
            resolution = Resolution.PARTIAL
            logger.warning(
                f"Partial delete: reservation {change.record_id} (log {change.log_id}) "
                f"matched {len(distinct_dates)} of {expected} nights",
                extra={"log_id": change.log_id, "hotel_id": change.hotel_id}
            )
        else:
            resolution = Resolution.RESOLVED

        if change.check_in is not None and change.check_out is not None:
            check_in = min(check_in, change.check_in)
            check_out = max(check_out, change.check_out)

        return ReconstructedDeletion(
            parent=change,
            check_in=check_in,
            check_out=check_out,
            resolution=resolution,
            child_log_ids=tuple(sorted(child.log_id for child in children)),
            expected_children=expected,
            matched_children=len(distinct_dates),
        )

    def _matching_children(self, parent: CanonicalChange, rows) -> List[CanonicalChange]:
        children = []
        for row in rows:
            try:
                child = self.canonicalizer.canonicalize(row)
            except MalformedChangeError as e:
                logger.warning(
                    f"Skipping child log {row.log_id} of reservation {parent.record_id}: {e}",
                    extra={"log_id": row.log_id}
                )
                continue

            if (
                child.entity == EntityKind.RESERVATION_DETAIL
                and child.action == Action.DELETE
                and child.parent_id == parent.record_id
                and child.hotel_id == parent.hotel_id
                and abs(child.log_time - parent.log_time) <= self.window
                and child.check_in is not None
            ):
                children.append(child)

        return children

    @staticmethod
    def _expected_children(change: CanonicalChange) -> Optional[int]:
        if change.check_in is None or change.check_out is None:
            return None
        nights = (change.check_out - change.check_in).days
        return nights if nights > 0 else None

    @staticmethod
    def _unresolved(change: CanonicalChange) -> ReconstructedDeletion:
        return ReconstructedDeletion(
            parent=change,
            check_in=None,
            check_out=None,
            resolution=Resolution.UNRESOLVED,
            expected_children=CascadeCorrelator._expected_children(change),
        )
