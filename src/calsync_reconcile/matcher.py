"""Pairs left and right items for one sync pass."""

import logging
from typing import List, Optional

from .identity import IdentityStore
from .models import CalendarEvent, MatchSet, Side, SyncContext, SyncDirection
from .prompts import ConfirmationGate
from .signature import signature, signatures_match

logger = logging.getLogger(__name__)


class Matcher:
    """Left-driven matcher.

    Links live on left items, so every left item scans the right list for
    its counterpart. Both input lists are consumed in place, iterating from
    the end so removals never disturb the indices still to be visited.
    """

    def __init__(
        self,
        context: SyncContext,
        identity: Optional[IdentityStore] = None,
        gate: Optional[ConfirmationGate] = None,
    ):
        self.context = context
        self.policy = context.policy
        self.identity = identity or IdentityStore()
        self.gate = gate or ConfirmationGate()
        self.logger = logger.getChild('matcher')

    def _default_direction(self) -> SyncDirection:
        if self.policy.direction == SyncDirection.BIDIRECTIONAL:
            return SyncDirection.RIGHT_TO_LEFT
        return self.policy.direction

    def match_events(
        self,
        left: List[CalendarEvent],
        right: List[CalendarEvent],
        direction: Optional[SyncDirection] = None,
    ) -> MatchSet:
        """Split both lists into paired, left-only and right-only items.

        Args:
            left: Left items (consumed)
            right: Right items (consumed)
            direction: Write direction of the pass; decides which bucket holds
                deletion candidates. Defaults to the configured direction
                (right-to-left when bidirectional).

        Returns:
            The match set of this pass
        """
        direction = direction or self._default_direction()
        match = MatchSet()
        self.logger.debug(f"Comparing {len(right)} right items to {len(left)} left items...")

        for o in range(len(left) - 1, -1, -1):
            item = left[o]
            if not item.has_core_fields():
                self.logger.warning(f"Skipping unreadable left item {item.id!r}.")
                match.skipped.append(item)
                del left[o]
                continue

            self.logger.debug(f"Checking {item.summary_line()}")
            if self.identity.get_foreign_event_id(item) is not None:
                if self._pair_by_id(left, o, right, match):
                    continue
            elif self.policy.merge_items and direction.destination is Side.LEFT:
                # Independent content in the destination, must not be deleted
                match.merged.append(item)
                del left[o]
            elif self._reclaim(item, right, match):
                del left[o]

        match.paired.reverse()
        if match.metadata_enhanced:
            self.logger.info(f"{match.metadata_enhanced} item's metadata enhanced.")

        match.left_only = list(left)
        match.right_only = list(right)
        left.clear()
        right.clear()

        self._suppress(match, direction)
        return match

    def _pair_by_id(
        self,
        left: List[CalendarEvent],
        o: int,
        right: List[CalendarEvent],
        match: MatchSet,
    ) -> bool:
        item = left[o]
        foreign_id = self.identity.get_foreign_event_id(item)
        link_incomplete = bool(self.identity.link_missing_fields(item))

        for g in range(len(right) - 1, -1, -1):
            candidate = right[g]
            if candidate.id != foreign_id:
                continue

            if link_incomplete:
                self.logger.info("Enhancing item's metadata...")
                if self.identity.set_link(item, candidate.id, self.context.right_calendar_id):
                    self.identity.mark_force_resync(item)
                    match.metadata_enhanced += 1
                link_incomplete = False

            if self.identity.ids_match(item, candidate, self.context.right_calendar_id):
                match.paired.append((item, candidate))
                del left[o]
                del right[g]
                return True
        return False

    def _reclaim(self, item: CalendarEvent, right: List[CalendarEvent], match: MatchSet) -> bool:
        """Write a link onto a linkless item whose signature matches a right item.

        The pair is not compared in this pass; the next pass matches it by id.
        """
        sig_item = signature(item)
        if not sig_item:
            return False

        for g in range(len(right) - 1, -1, -1):
            candidate = right[g]
            reverse_id = self.identity.get_foreign_event_id(candidate)
            if reverse_id is not None and reverse_id != item.id:
                continue
            if not signatures_match(sig_item, signature(candidate)):
                continue

            self.identity.set_link(item, candidate.id, self.context.right_calendar_id)
            self.identity.mark_force_resync(item)
            if self.policy.is_bidirectional:
                self.identity.set_link(candidate, item.id, self.context.left_calendar_id)
            match.reclaimed.append((item, candidate))
            del right[g]
            self.logger.info(f"Reclaimed: {item.summary_line()}")
            return True
        return False

    def _suppress(self, match: MatchSet, direction: SyncDirection) -> None:
        """Apply the deletion-suppression policies for ``direction``."""
        deletes = match.delete_candidates(direction)
        creates = match.create_candidates(direction)
        unclaimed = [i for i in deletes if self.identity.get_foreign_event_id(i) is None]

        if unclaimed and not self.policy.is_bidirectional:
            self.logger.info(f"{len(unclaimed)} unclaimed orphan items found.")
            if self.policy.merge_items or self.policy.disable_delete or self.policy.confirm_on_delete:
                self.logger.info("These will be kept due to configuration settings.")
                if self.policy.merge_items:
                    match.merged.extend(unclaimed)
                    deletes[:] = [i for i in deletes if i not in unclaimed]
            elif not self.gate.confirm(
                f"{len(unclaimed)} {direction.destination.value} calendar items can't be matched "
                f"to {direction.source.value}. Continue with deletions?",
                default=False,
            ):
                self.logger.info("User has requested to keep them.")
                deletes[:] = [i for i in deletes if i not in unclaimed]
            else:
                self.logger.info("User has opted to delete them.")

        if self.policy.disable_delete:
            if deletes:
                self.logger.warning(
                    f"{len(deletes)} {direction.destination.value} items would have been deleted, "
                    "but you have deletions disabled."
                )
            match.suppressed_deletions += len(deletes)
            deletes.clear()

        if self.policy.is_bidirectional:
            # Don't recreate any items that have been deleted in the destination
            creates[:] = [
                i for i in creates if self.identity.get_foreign_event_id(i) is None
            ]
            # Don't delete items that aren't in the source yet or were just created there
            kept = [i for i in deletes if not self._deletable_in_bidirectional(i)]
            if kept:
                self.logger.debug(f"{len(kept)} items kept, they need syncing up.")
                match.suppressed_deletions += len(kept)
                deletes[:] = [i for i in deletes if i not in kept]

    def _deletable_in_bidirectional(self, item: CalendarEvent) -> bool:
        if self.identity.get_foreign_event_id(item) is None:
            return False
        last_sync = self.context.last_sync_at
        if last_sync is None:
            return False
        return item.updated <= last_sync
