"""Attribute-level diff of one matched pair."""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from .changes import ChangeTracker, compare_attribute
from .identity import IdentityStore
from .models import (
    Attendee,
    CalendarEvent,
    DiffResult,
    RecurrenceState,
    Reminder,
    Side,
    SyncContext,
    SyncDirection,
)
from .obfuscate import Obfuscator
from .policies import is_ok_to_sync_reminder, resolve_availability, resolve_privacy
from .recurrence import RecurrenceReconciler, classify
from .timeutils import normalize_instant

logger = logging.getLogger(__name__)

__all__ = ['AttributeDiffer', 'ChangeTracker', 'compare_attribute']


def orient(
    left: CalendarEvent,
    right: CalendarEvent,
    direction: SyncDirection,
) -> Tuple[CalendarEvent, CalendarEvent]:
    """Return ``(source, target)`` of a pair for a write direction."""
    if direction.destination is Side.LEFT:
        return right, left
    return left, right


class AttributeDiffer:
    """Compares a source item against its destination and applies the changes.

    The destination is modified in place; nothing is saved here.
    """

    def __init__(
        self,
        context: SyncContext,
        identity: Optional[IdentityStore] = None,
        obfuscator: Optional[Obfuscator] = None,
    ):
        self.context = context
        self.policy = context.policy
        self.identity = identity or IdentityStore()
        self.obfuscator = obfuscator or Obfuscator(self.policy)
        self.recurrence = RecurrenceReconciler(self)
        self.logger = logger.getChild('differ')

    def should_compare(
        self,
        source: CalendarEvent,
        target: CalendarEvent,
        force_compare: bool = False,
    ) -> bool:
        """Staleness guard.

        The destination being newer than the source means the source holds
        nothing new. In bidirectional sync a source whose last change is the
        engine's own write (its stamp is within the grace window of its
        ``updated``) is an echo and is not compared either.
        """
        if force_compare or self.context.manual_force_compare:
            return True
        if self.identity.is_force_resync(target) or self.identity.is_force_resync(source):
            return True

        source_updated = normalize_instant(source.updated)
        if normalize_instant(target.updated) > source_updated:
            self.logger.debug(f"Destination is newer, not comparing {source.summary_line()}")
            return False

        if self.policy.is_bidirectional:
            stamp = self.identity.get_engine_last_modified(source)
            grace = timedelta(seconds=self.policy.engine_write_grace_seconds)
            if stamp is not None and stamp + grace >= source_updated:
                self.logger.debug(f"Last change was our own write, not comparing {source.summary_line()}")
                return False
        return True

    def diff(
        self,
        left: CalendarEvent,
        right: CalendarEvent,
        direction: SyncDirection,
        force_compare: bool = False,
    ) -> DiffResult:
        """Diff a confirmed pair for one write direction.

        Args:
            left: Left item of the pair
            right: Right item of the pair
            direction: Write direction; its destination is modified in place
            force_compare: Bypass the staleness guard

        Returns:
            DiffResult whose ``target`` is the mutated destination item
        """
        source, target = orient(left, right, direction)
        if not self.should_compare(source, target, force_compare):
            return DiffResult(target=target, compared=False)

        arrow = "L->R" if direction is SyncDirection.LEFT_TO_RIGHT else "R->L"
        tracker = ChangeTracker(direction, header=f"Syncing {arrow}: {target.summary_line()}")
        self._compare_fields(source, target, direction, tracker)

        if tracker.mutations:
            self.logger.info(tracker.render())
        needs_touch = (
            self.identity.is_force_resync(target)
            or classify(target) is RecurrenceState.SERIES_MASTER
        )
        return DiffResult(
            mutations=tracker.mutations,
            change_log=list(tracker.lines),
            target=target,
            compared=True,
            needs_touch=needs_touch,
        )

    def _compare_fields(
        self,
        source: CalendarEvent,
        target: CalendarEvent,
        direction: SyncDirection,
        tracker: ChangeTracker,
    ) -> None:
        target_was_master = classify(target) is RecurrenceState.SERIES_MASTER
        source_is_master = classify(source) is RecurrenceState.SERIES_MASTER

        if not target_was_master and not source_is_master:
            if compare_attribute("All-Day", direction, source.all_day, target.all_day, tracker):
                target.all_day = source.all_day

        timezone_changed = False
        if compare_attribute("Start Timezone", direction, source.start_timezone, target.start_timezone, tracker):
            target.start_timezone = source.start_timezone
            timezone_changed = True
        if compare_attribute("End Timezone", direction, source.end_timezone, target.end_timezone, tracker):
            target.end_timezone = source.end_timezone
            timezone_changed = True

        if compare_attribute("Start Time", direction, source.start, target.start, tracker):
            target.start = source.start
        if compare_attribute("End Time", direction, source.end, target.end, tracker):
            target.end = source.end

        self.recurrence.reconcile_pattern(
            target, source, tracker, rebuild=timezone_changed and target_was_master and source_is_master
        )

        subject = self.obfuscator.apply(source.summary, direction)
        if compare_attribute("Subject", direction, subject, target.summary, tracker):
            target.summary = subject

        if self.syncs_description(direction):
            if compare_attribute("Description", direction, source.description, target.description, tracker):
                target.description = source.description
        elif not self.policy.is_bidirectional and target.description:
            if compare_attribute("Description", direction, "", target.description, tracker):
                target.description = ""

        if compare_attribute("Location", direction, source.location, target.location, tracker):
            target.location = source.location

        if classify(target) is not RecurrenceState.GENERATED_OCCURRENCE:
            visibility = resolve_privacy(self.policy, direction, source.visibility, target.visibility)
            if compare_attribute("Private", direction, visibility, target.visibility, tracker):
                target.visibility = visibility

        transparency = resolve_availability(self.policy, direction, source.transparency, target.transparency)
        if compare_attribute("Free/Busy", direction, transparency, target.transparency, tracker):
            target.transparency = transparency

        if self.policy.add_attendees:
            self.reconcile_attendees(source, target, direction, tracker)

        if self.policy.add_reminders:
            self.reconcile_reminders(source, target, direction, tracker)

    def syncs_description(self, direction: SyncDirection) -> bool:
        if not self.policy.add_description:
            return False
        one_way = self.policy.description_one_way
        if self.policy.is_bidirectional and one_way is not None:
            return one_way == direction
        return True

    def _is_excluded_attendee(self, email: str, *organizers: Optional[str]) -> bool:
        email = email.lower()
        owner = (self.context.owner_email or "").lower()
        if owner and email == owner:
            return True
        return any(org and email == org.lower() for org in organizers)

    def reconcile_attendees(
        self,
        source: CalendarEvent,
        target: CalendarEvent,
        direction: SyncDirection,
        tracker: ChangeTracker,
    ) -> None:
        """Match recipients by address; only the optional flag is reconciled."""
        if (
            not source.attendees
            and self.policy.is_bidirectional
            and len(target.attendees) > self.policy.max_attendees
        ):
            self.logger.info(
                f"Leaving {len(target.attendees)} attendees untouched on {target.summary_line()}"
            )
            return

        organizer = (target.organizer or "").lower()
        remaining: List[Attendee] = list(source.attendees)
        kept: List[Attendee] = []
        for recipient in target.attendees:
            address = recipient.email.lower()
            if organizer and address == organizer:
                kept.append(recipient)
                continue

            found = next((a for a in remaining if a.email.lower() == address), None)
            if found is None:
                tracker.add(f"Attendee removed: {recipient.label}")
                continue

            if compare_attribute(
                f"Attendee {recipient.label} - Optional", direction, found.optional, recipient.optional, tracker
            ):
                recipient.optional = found.optional
            remaining.remove(found)
            kept.append(recipient)

        for attendee in remaining:
            if self._is_excluded_attendee(attendee.email, source.organizer, target.organizer):
                continue
            kept.append(Attendee(
                email=attendee.email,
                display_name=attendee.display_name,
                optional=attendee.optional,
            ))
            tracker.add(f"Attendee added: {attendee.label}")
        target.attendees = kept

    def reconcile_reminders(
        self,
        source: CalendarEvent,
        target: CalendarEvent,
        direction: SyncDirection,
        tracker: ChangeTracker,
    ) -> None:
        """Only the popup reminder is synchronised."""
        wanted = source.popup_reminder()
        current = target.popup_reminder()

        if wanted is not None:
            if current is None:
                target.reminders.append(Reminder(method="popup", minutes=wanted.minutes))
                tracker.add(f"Reminder: nothing => {wanted.minutes}")
            elif compare_attribute("Reminder", direction, wanted.minutes, current.minutes, tracker):
                current.minutes = wanted.minutes
        elif current is not None:
            if is_ok_to_sync_reminder(self.policy, target, self.context.default_reminder_minutes):
                target.reminders = [r for r in target.reminders if r is not current]
                tracker.add(f"Reminder: {current.minutes} => removed")
            else:
                self.logger.debug("Reminder inside the do-not-disturb window, left in place.")

    def build_new(self, source: CalendarEvent, direction: SyncDirection) -> CalendarEvent:
        """Destination item to create for ``source`` when writing in ``direction``."""
        target = CalendarEvent(
            source=direction.destination,
            summary=self.obfuscator.apply(source.summary, direction),
            description=source.description if self.syncs_description(direction) else None,
            location=source.location,
            start=source.start,
            end=source.end,
            all_day=source.all_day,
            start_timezone=source.start_timezone,
            end_timezone=source.end_timezone,
            visibility=resolve_privacy(self.policy, direction, source.visibility),
            transparency=resolve_availability(self.policy, direction, source.transparency),
        )

        if classify(source) is RecurrenceState.SERIES_MASTER:
            target.recurrence = source.recurrence.model_copy(deep=True)
            self.recurrence.recompute_duration(target)

        if self.policy.add_attendees:
            target.attendees = [
                Attendee(email=a.email, display_name=a.display_name, optional=a.optional)
                for a in source.attendees
                if not self._is_excluded_attendee(a.email, source.organizer)
            ]

        if self.policy.add_reminders:
            reminder = source.popup_reminder()
            if reminder is not None:
                target.reminders = [Reminder(method="popup", minutes=reminder.minutes)]
        return target
