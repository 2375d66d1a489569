"""
Dispatch-Gap Detector for Inventory Reconciliation

Classifies each resolved, relevant change as notified (a stock dispatch for
the hotel followed it within the window) or missing. Missing changes become
MissingTrigger records carrying their provenance and the nearest dispatch
found in a wider diagnostic window.
"""

import logging
from datetime import timedelta
from typing import Optional

from src.reconciliation.models import CorrelatedChange, MissingTrigger
from src.reconciliation.repository import DispatchQueueRepository

logger = logging.getLogger(__name__)


class DispatchGapDetector:
    """Checks changes against the outbound dispatch queue."""

    def __init__(
        self,
        repository: DispatchQueueRepository,
        service_name_pattern: str = "%Stock%",
        window: timedelta = timedelta(minutes=5),
        silent_skip_lookback: timedelta = timedelta(minutes=15),
        silent_skip_lookahead: timedelta = timedelta(minutes=30)
    ):
        """
        Initialize the detector.

        Args:
            repository: Dispatch queue repository
            service_name_pattern: SQL LIKE pattern matching channel stock services
            window: Time after the change within which a dispatch counts
            silent_skip_lookback: Diagnostic window start, before the change
            silent_skip_lookahead: Diagnostic window end, after the change
        """
        self.repository = repository
        self.service_name_pattern = service_name_pattern
        self.window = window
        self.silent_skip_lookback = silent_skip_lookback
        self.silent_skip_lookahead = silent_skip_lookahead

        logger.debug(f"Initialized DispatchGapDetector (pattern={service_name_pattern}, window={window})")

    def check(self, change: CorrelatedChange) -> Optional[MissingTrigger]:
        """
        Check one change for a matching dispatch.

        Args:
            change: Resolved, relevant change (or reconstructed deletion)

        Returns:
            MissingTrigger if no dispatch followed the change, else None

        Raises:
            ValueError: If the change has no resolved date range
        """
        if not change.is_resolved or change.check_in is None or change.check_out is None:
            raise ValueError(f"Change {change.log_id} has no resolved date range")

        dispatch = self.repository.find_dispatch(
            change.hotel_id,
            self.service_name_pattern,
            change.log_time,
            change.log_time + self.window
        )

        if dispatch is not None:
            logger.debug(
                f"Log {change.log_id} notified by dispatch {dispatch.request_id} "
                f"at {dispatch.created_at.isoformat()}"
            )
            return None

        nearby = self.repository.find_nearest_dispatch(
            change.hotel_id,
            self.service_name_pattern,
            change.log_time,
            change.log_time - self.silent_skip_lookback,
            change.log_time + self.silent_skip_lookahead
        )

        action = change.action.value if hasattr(change.action, "value") else str(change.action)

        trigger = MissingTrigger(
            hotel_id=change.hotel_id,
            check_in=change.check_in,
            check_out=change.check_out,
            log_ids=tuple(change.log_ids),
            log_time=change.log_time,
            action=action,
            client_id=change.client_id,
            status=change.status,
            nearby_dispatch=nearby,
            possible_silent_skip=nearby is None,
        )

        if trigger.possible_silent_skip:
            logger.info(
                f"Possible silent skip: log {change.log_id} hotel {change.hotel_id} "
                f"has no stock dispatch nearby"
            )
        else:
            gap = (nearby.created_at - change.log_time).total_seconds() / 60
            logger.warning(
                f"Missing trigger: log {change.log_id} hotel {change.hotel_id} "
                f"{trigger.check_in.isoformat()}..{trigger.check_out.isoformat()} "
                f"(nearest dispatch {gap:+.1f} min)"
            )

        return trigger
