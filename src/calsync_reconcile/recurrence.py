"""Recurrence reconciliation: series transitions, pattern diff and exceptions."""

import logging
from datetime import datetime
from typing import Dict, Optional, Set

from .changes import ChangeTracker, compare_attribute
from .models import (
    CalendarEvent,
    RecurrenceException,
    RecurrenceState,
    Side,
    SyncDirection,
)
from .timeutils import localize, normalize_instant

logger = logging.getLogger(__name__)

PATTERN_FIELDS = (
    ("Recurrence Frequency", "frequency"),
    ("Recurrence Interval", "interval"),
    ("Recurrence Days", "by_day"),
    ("Recurrence Count", "count"),
    ("Recurrence Until", "until"),
)


def classify(event: CalendarEvent) -> RecurrenceState:
    """Recurrence state of a single item."""
    if event.recurring_event_id:
        return RecurrenceState.GENERATED_OCCURRENCE
    if event.recurrence is not None:
        return RecurrenceState.SERIES_MASTER
    return RecurrenceState.NON_RECURRING


def exception_key(original_start: datetime) -> datetime:
    """Join key of an exception: its pattern-computed start, UTC seconds."""
    return normalize_instant(original_start)


class RecurrenceReconciler:
    """Keeps the series pattern and exceptions of a destination item in step.

    ``differ`` is the attribute differ used to compare modified occurrences.
    """

    def __init__(self, differ):
        self.differ = differ
        self.logger = logger.getChild('reconciler')

    classify = staticmethod(classify)

    def reconcile_pattern(
        self,
        target: CalendarEvent,
        source: CalendarEvent,
        tracker: ChangeTracker,
        rebuild: bool = False,
    ) -> bool:
        """Apply series transitions and diff the pattern of ``target``.

        Args:
            target: Destination item, modified in place
            source: Source of truth
            tracker: Change tracker of the running compare
            rebuild: Clear and regenerate the pattern (timezone change)

        Returns:
            True when the pattern was created or rebuilt, meaning the
            exceptions have to be reconciled from scratch
        """
        source_state = classify(source)
        target_state = classify(target)
        if target_state is RecurrenceState.GENERATED_OCCURRENCE:
            return False

        if source_state is not RecurrenceState.SERIES_MASTER:
            if target_state is RecurrenceState.SERIES_MASTER:
                tracker.add(f"Recurrence: {target.recurrence.to_rrule_string()} => none")
                target.recurrence = None
                target.exceptions = []
            return False

        if target_state is not RecurrenceState.SERIES_MASTER or rebuild:
            if rebuild:
                self.logger.debug("Timezone change on a series, rebuilding its pattern.")
                tracker.add(f"Recurrence: rebuilt as {source.recurrence.to_rrule_string()}")
            else:
                tracker.add(f"Recurrence: none => {source.recurrence.to_rrule_string()}")
            target.recurrence = source.recurrence.model_copy(deep=True)
            target.exceptions = []
            self.recompute_duration(target)
            return True

        self.recompute_duration(target)
        rule = target.recurrence
        for name, attr in PATTERN_FIELDS:
            new_value = getattr(source.recurrence, attr)
            if compare_attribute(name, tracker.direction, new_value, getattr(rule, attr), tracker):
                setattr(rule, attr, set(new_value) if attr == "by_day" else new_value)
        return False

    def recompute_duration(self, target: CalendarEvent) -> None:
        # Not a mutation: the pattern does not store its duration independently
        if target.recurrence is not None and target.duration is not None:
            target.recurrence.duration_minutes = int(target.duration.total_seconds() // 60)

    def _pattern_keys(self, series: CalendarEvent) -> Optional[Set[datetime]]:
        if series.recurrence is None or series.start is None:
            return None
        dtstart = localize(series.start, series.start_timezone)
        try:
            return {exception_key(dt) for dt in series.recurrence.occurrences(dtstart)}
        except ValueError as e:
            self.logger.warning(f"Could not expand recurrence of {series.summary_line()}: {e}")
            return None

    def reconcile_exceptions(
        self,
        target: CalendarEvent,
        source: CalendarEvent,
        direction: SyncDirection,
        force_compare: bool = True,
        tracker: Optional[ChangeTracker] = None,
    ) -> int:
        """Make the exceptions of the ``target`` series mirror the source's.

        Returns:
            Number of exception mutations applied to ``target``
        """
        tracker = tracker or ChangeTracker(direction)
        if classify(source) is not RecurrenceState.SERIES_MASTER:
            return 0
        if classify(target) is not RecurrenceState.SERIES_MASTER:
            return 0

        before = tracker.mutations
        source_map: Dict[datetime, RecurrenceException] = {
            exception_key(e.original_start): e for e in source.exceptions
        }
        target_map: Dict[datetime, RecurrenceException] = {
            exception_key(e.original_start): e for e in target.exceptions
        }

        valid = self._pattern_keys(source)
        for key, exception in sorted(source_map.items()):
            label = key.strftime("%Y-%m-%d %H:%M")
            if valid is not None and key not in valid:
                self.logger.warning(
                    f"Exception {label} is not an occurrence of {source.summary_line()}"
                )

            existing = target_map.get(key)
            if exception.cancelled:
                if existing is None or not existing.cancelled:
                    target_map[key] = RecurrenceException(original_start=key, cancelled=True)
                    tracker.add(f"Occurrence {label}: cancelled")
                continue

            if existing is None or existing.cancelled:
                target_map[key] = RecurrenceException(
                    original_start=key,
                    override=self._new_override(exception, target, direction),
                )
                tracker.add(f"Occurrence {label}: modified")
            elif exception.override is None:
                continue
            elif existing.override is None:
                existing.override = self._new_override(exception, target, direction)
                tracker.add(f"Occurrence {label}: modified")
            else:
                occurrence = self._diff_override(exception, existing, direction, force_compare)
                tracker.extend(occurrence, prefix=f"Occurrence {label} - ")

        for key in sorted(set(target_map) - set(source_map)):
            del target_map[key]
            tracker.add(f"Occurrence {key.strftime('%Y-%m-%d %H:%M')}: reverted to pattern")

        target.exceptions = [target_map[key] for key in sorted(target_map)]
        return tracker.mutations - before

    def _new_override(
        self,
        exception: RecurrenceException,
        target: CalendarEvent,
        direction: SyncDirection,
    ) -> Optional[CalendarEvent]:
        if exception.override is None:
            return None
        override = self.differ.build_new(exception.override, direction)
        override.recurring_event_id = target.id or None
        return override

    def _diff_override(
        self,
        exception: RecurrenceException,
        existing: RecurrenceException,
        direction: SyncDirection,
        force_compare: bool,
    ) -> ChangeTracker:
        if direction.destination is Side.LEFT:
            result = self.differ.diff(
                existing.override, exception.override, direction, force_compare=force_compare
            )
        else:
            result = self.differ.diff(
                exception.override, existing.override, direction, force_compare=force_compare
            )
        occurrence = ChangeTracker(direction)
        for line in result.change_log:
            occurrence.add(line)
        return occurrence

    def reconcile_recurrence(
        self,
        target: CalendarEvent,
        source: CalendarEvent,
        direction: SyncDirection,
    ) -> int:
        """Pattern transition plus exception reconciliation for one master pair.

        Returns:
            Mutation count
        """
        tracker = ChangeTracker(direction, header=f"Recurrence of {source.summary_line()}")
        self.reconcile_pattern(target, source, tracker)
        self.reconcile_exceptions(target, source, direction, force_compare=True, tracker=tracker)
        if tracker.mutations:
            self.logger.info(tracker.render())
        return tracker.mutations
