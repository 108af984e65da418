"""Timezone helpers shared by the signature builder, differ and reconciler."""

from datetime import datetime
from typing import Optional

import pytz


def ensure_timezone_aware(dt: datetime) -> datetime:
    """Ensure datetime is timezone-aware for safe comparison.

    Naive datetimes (and datetimes with a broken tzinfo) are assumed UTC.
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


def to_utc(dt: datetime) -> datetime:
    return ensure_timezone_aware(dt).astimezone(pytz.UTC)


def normalize_instant(dt: Optional[datetime]) -> Optional[datetime]:
    """UTC at whole-second precision.

    Providers round differently (Exchange keeps milliseconds, CalDAV drops
    them), so every instant is cut to seconds before it is compared or used
    as a key.
    """
    if dt is None:
        return None
    return to_utc(dt).replace(microsecond=0)


def instant_key(dt: datetime, all_day: bool = False) -> str:
    """Canonical string form of an instant (date only for all-day values)."""
    if all_day:
        return dt.strftime("%Y%m%d")
    return normalize_instant(dt).strftime("%Y%m%dT%H%M%SZ")


def localize(dt: datetime, timezone_name: Optional[str]) -> datetime:
    """Express ``dt`` in the named IANA timezone (its own zone if unknown)."""
    dt = ensure_timezone_aware(dt)
    if not timezone_name:
        return dt
    try:
        zone = pytz.timezone(timezone_name)
    except pytz.UnknownTimeZoneError:
        return dt
    return dt.astimezone(zone)
