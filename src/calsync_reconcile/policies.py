"""Enforcement policies: privacy, availability and the reminder quiet hours."""

import logging
from datetime import datetime, time, timedelta
from typing import Optional

from .config import SyncPolicy
from .models import CalendarEvent, SyncDirection, Transparency, Visibility
from .timeutils import localize

logger = logging.getLogger(__name__)


def _enforce(
    enforced: bool,
    enforced_direction: SyncDirection,
    forced_value,
    relaxed_value,
    policy: SyncPolicy,
    direction: SyncDirection,
    source_value,
    current_value,
):
    """Shared shape of the privacy and availability rules.

    ``current_value`` is the destination's value, None when the destination
    item is being created.
    """
    if not enforced:
        return source_value

    if not policy.is_bidirectional:
        return forced_value

    if direction == enforced_direction:
        if not policy.created_items_only or current_value is None:
            return forced_value
        return source_value

    # Writing back into the enforcing side: the forced value only holds until
    # the enforcing side itself relaxes it
    if current_value is None:
        return source_value
    if current_value == forced_value and source_value != forced_value:
        return relaxed_value
    return current_value


def resolve_privacy(
    policy: SyncPolicy,
    direction: SyncDirection,
    source_value: Visibility,
    current_value: Optional[Visibility] = None,
) -> Visibility:
    """Visibility to write into the destination of ``direction``."""
    return _enforce(
        policy.set_entries_private,
        policy.privacy_direction,
        Visibility.PRIVATE,
        Visibility.PUBLIC,
        policy,
        direction,
        source_value,
        current_value,
    )


def resolve_availability(
    policy: SyncPolicy,
    direction: SyncDirection,
    source_value: Transparency,
    current_value: Optional[Transparency] = None,
) -> Transparency:
    """Transparency to write into the destination of ``direction``."""
    return _enforce(
        policy.set_entries_available,
        policy.availability_direction,
        Transparency.FREE,
        Transparency.BUSY,
        policy,
        direction,
        source_value,
        current_value,
    )


def in_quiet_window(moment: time, start: time, end: time) -> bool:
    """Whether a time of day falls inside the do-not-disturb window.

    Both ends are inside the window. A window whose start is later than
    its end wraps midnight.
    """
    if start > end:
        return moment >= start or moment <= end
    return start <= moment <= end


def alarm_time(event_start: datetime, minutes: int, timezone_name: Optional[str] = None) -> datetime:
    return localize(event_start, timezone_name) - timedelta(minutes=minutes)


def is_ok_to_sync_reminder(
    policy: SyncPolicy,
    event: CalendarEvent,
    default_minutes: Optional[int] = None,
) -> bool:
    """Whether the popup reminder of ``event`` may be touched.

    A reminder whose alarm rings inside the quiet window is left alone.
    Items without a popup reminder are checked against the provider's
    default reminder when that is configured.
    """
    if not policy.reminder_dnd:
        return True
    if event.start is None:
        return False

    reminder = event.popup_reminder()
    if reminder is not None:
        minutes = reminder.minutes
    elif policy.use_default_reminder and default_minutes is not None:
        minutes = default_minutes
    else:
        return False

    alarm = alarm_time(event.start, minutes, event.start_timezone)
    if in_quiet_window(alarm.time(), policy.reminder_dnd_start, policy.reminder_dnd_end):
        logger.debug(f"Reminder at {alarm.strftime('%H:%M')} is inside the do-not-disturb window.")
        return False
    return True
