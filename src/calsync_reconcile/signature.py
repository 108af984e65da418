"""Content fingerprints used to reclaim items that carry no link metadata."""

import logging

from .models import CalendarEvent
from .timeutils import instant_key

logger = logging.getLogger(__name__)


def signature(event: CalendarEvent) -> str:
    """Build the matching signature of an event.

    Subject plus start and end, with both instants normalised so that
    providers with different time rounding produce identical strings.
    Returns an empty string when the core fields cannot be read; an empty
    signature never matches anything.
    """
    try:
        if event.start is None or event.end is None:
            return ""
        start = instant_key(event.start, event.all_day)
        end = instant_key(event.end, event.all_day)
        return f"{(event.summary or '').strip()};{start};{end}"
    except (AttributeError, TypeError, ValueError) as e:
        logger.debug(f"Could not build signature for {event.id!r}: {e}")
        return ""


def signatures_match(sig_a: str, sig_b: str) -> bool:
    if not sig_a or not sig_b:
        return False
    return sig_a == sig_b
