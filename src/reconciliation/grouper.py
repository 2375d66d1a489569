"""
Remediation Grouper for Inventory Reconciliation

Sweep-line interval merge of missing triggers per hotel. Overlapping or
touching date ranges collapse into one RemediationGroup so the channel
receives a single recompute call per contiguous range.
"""

import logging
from typing import Dict, Iterable, List

from src.reconciliation.models import MissingTrigger, RemediationGroup

logger = logging.getLogger(__name__)


class RemediationGrouper:
    """
    Merges missing triggers into disjoint remediation groups.

    The result does not depend on input order and merging an already
    merged set changes nothing.
    """

    def group(self, triggers: Iterable[MissingTrigger]) -> List[RemediationGroup]:
        """
        Merge triggers into groups.

        Args:
            triggers: Missing triggers, any order

        Returns:
            Groups sorted by (hotel_id, check_in), pairwise disjoint per hotel
        """
        ordered = sorted(triggers, key=lambda t: t.sort_key())
        groups: List[RemediationGroup] = []
        open_groups: Dict[int, RemediationGroup] = {}

        for trigger in ordered:
            current = open_groups.get(trigger.hotel_id)

            if current is not None and trigger.check_in <= current.check_out:
                current.check_out = max(current.check_out, trigger.check_out)
                current.members.append(trigger)
                continue

            current = RemediationGroup(
                hotel_id=trigger.hotel_id,
                check_in=trigger.check_in,
                check_out=trigger.check_out,
                members=[trigger]
            )
            open_groups[trigger.hotel_id] = current
            groups.append(current)

        logger.debug(f"Grouped {len(ordered)} triggers into {len(groups)} remediation groups")
        return groups

    def merge_groups(self, groups: Iterable[RemediationGroup]) -> List[RemediationGroup]:
        """
        Re-merge a set of groups, e.g. groups from overlapping windows.

        Args:
            groups: Existing groups

        Returns:
            Merged groups; members keep their original trigger records
        """
        ordered = sorted(groups, key=lambda g: (g.hotel_id, g.check_in, g.check_out))
        merged: List[RemediationGroup] = []
        open_groups: Dict[int, RemediationGroup] = {}

        for group in ordered:
            current = open_groups.get(group.hotel_id)

            if current is not None and group.check_in <= current.check_out:
                current.check_out = max(current.check_out, group.check_out)
                current.members.extend(group.members)
                continue

            current = RemediationGroup(
                hotel_id=group.hotel_id,
                check_in=group.check_in,
                check_out=group.check_out,
                members=list(group.members)
            )
            open_groups[group.hotel_id] = current
            merged.append(current)

        for group in merged:
            group.members.sort(key=lambda t: t.sort_key())

        return merged
