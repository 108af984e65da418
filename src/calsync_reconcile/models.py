"""Data models for calendar reconciliation."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple
from uuid import UUID, uuid4

from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, rrule, weekday
from dateutil.rrule import MO, TU, WE, TH, FR, SA, SU
from pydantic import BaseModel, Field, field_validator, model_validator
import pytz

if TYPE_CHECKING:
    from .config import SyncPolicy


class Side(str, Enum):
    """Which of the two synchronised collections an item belongs to."""

    LEFT = "left"
    RIGHT = "right"

    @property
    def other(self) -> "Side":
        return Side.RIGHT if self is Side.LEFT else Side.LEFT


class SyncDirection(str, Enum):
    """Sync direction.

    The two unidirectional members double as *write directions*: they name
    the side being written (destination) and the side supplying the truth.
    """

    LEFT_TO_RIGHT = "left_to_right"
    RIGHT_TO_LEFT = "right_to_left"
    BIDIRECTIONAL = "bidirectional"

    @property
    def destination(self) -> Side:
        if self is SyncDirection.BIDIRECTIONAL:
            raise ValueError("Bidirectional sync has no single destination")
        return Side.RIGHT if self is SyncDirection.LEFT_TO_RIGHT else Side.LEFT

    @property
    def source(self) -> Side:
        return self.destination.other

    def write_directions(self) -> List["SyncDirection"]:
        """Unidirectional passes making up this sync, in execution order."""
        if self is SyncDirection.BIDIRECTIONAL:
            return [SyncDirection.LEFT_TO_RIGHT, SyncDirection.RIGHT_TO_LEFT]
        return [self]


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Transparency(str, Enum):
    FREE = "free"
    BUSY = "busy"


class RecurrenceState(str, Enum):
    """Recurrence classification of a single item."""

    NON_RECURRING = "non_recurring"
    SERIES_MASTER = "series_master"
    GENERATED_OCCURRENCE = "generated_occurrence"


class RecurrenceFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


_RRULE_FREQ = {
    RecurrenceFrequency.DAILY: DAILY,
    RecurrenceFrequency.WEEKLY: WEEKLY,
    RecurrenceFrequency.MONTHLY: MONTHLY,
    RecurrenceFrequency.YEARLY: YEARLY,
}

WEEKDAY_CODES: Dict[str, weekday] = {
    "MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU,
}

_RRULE_KEYS = {"FREQ", "INTERVAL", "BYDAY", "COUNT", "UNTIL"}


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value


class Attendee(BaseModel):
    """Meeting attendee."""

    email: str = Field(..., description="Attendee email address")
    display_name: Optional[str] = Field(None, description="Display name")
    optional: bool = Field(False, description="Whether attendance is optional")
    response_status: Optional[str] = Field(
        None, description="Response status (read only, never synced)"
    )

    @property
    def label(self) -> str:
        return self.display_name or self.email


class Reminder(BaseModel):
    """Reminder rule."""

    method: str = Field("popup", description="Reminder kind, e.g. popup or email")
    minutes: int = Field(..., ge=0, description="Minutes before start")


class RecurrenceRule(BaseModel):
    """Recurrence pattern of a series master."""

    frequency: RecurrenceFrequency = Field(..., description="Repeat frequency")
    interval: int = Field(1, ge=1, description="Repeat every N periods")
    by_day: Set[str] = Field(default_factory=set, description="Day-of-week codes (MO..SU)")
    count: Optional[int] = Field(None, ge=1, description="End after N occurrences")
    until: Optional[datetime] = Field(None, description="End on or before this instant")
    duration_minutes: Optional[int] = Field(
        None, description="Pattern duration, recomputed from the master every pass"
    )

    @field_validator("by_day", mode="before")
    @classmethod
    def normalize_days(cls, v):
        if v is None:
            return set()
        days = {str(day).strip().upper() for day in v if str(day).strip()}
        unknown = days - set(WEEKDAY_CODES)
        if unknown:
            # Ordinal days (1MO, -1FR) change the meaning of the rule, refuse them
            raise ValueError(f"Unsupported day codes: {sorted(unknown)}")
        return days

    @field_validator("until", mode="before")
    @classmethod
    def ensure_until_aware(cls, v):
        return _aware(v)

    @model_validator(mode="after")
    def check_end_condition(self):
        if self.count is not None and self.until is not None:
            raise ValueError("A recurrence rule cannot have both COUNT and UNTIL")
        return self

    def to_rrule_string(self) -> str:
        """Render as an RFC 5545 RRULE line."""
        parts = [f"FREQ={self.frequency.value}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            ordered = [code for code in WEEKDAY_CODES if code in self.by_day]
            parts.append("BYDAY=" + ",".join(ordered))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            until = self.until.astimezone(pytz.UTC)
            parts.append("UNTIL=" + until.strftime("%Y%m%dT%H%M%SZ"))
        return "RRULE:" + ";".join(parts)

    @classmethod
    def from_rrule_string(cls, value: str) -> "RecurrenceRule":
        """Parse an RRULE line (with or without the ``RRULE:`` prefix)."""
        text = value.strip()
        if text.upper().startswith("RRULE:"):
            text = text[6:]
        fields: Dict[str, str] = {}
        for part in text.split(";"):
            if "=" in part:
                key, val = part.split("=", 1)
                fields[key.strip().upper()] = val.strip()
        if "FREQ" not in fields:
            raise ValueError(f"RRULE without FREQ: {value}")
        unsupported = set(fields) - _RRULE_KEYS
        if fields.get("WKST", "MO").upper() == "MO":
            unsupported.discard("WKST")
        if unsupported:
            raise ValueError(f"Unsupported RRULE parts {sorted(unsupported)}: {value}")

        until = None
        if "UNTIL" in fields:
            raw = fields["UNTIL"].rstrip("Z")
            fmt = "%Y%m%dT%H%M%S" if "T" in raw else "%Y%m%d"
            until = pytz.UTC.localize(datetime.strptime(raw, fmt))

        return cls(
            frequency=RecurrenceFrequency(fields["FREQ"].upper()),
            interval=int(fields.get("INTERVAL", 1)),
            by_day=[d for d in fields.get("BYDAY", "").split(",") if d],
            count=int(fields["COUNT"]) if "COUNT" in fields else None,
            until=until,
        )

    def occurrences(self, dtstart: datetime, limit: int = 500) -> List[datetime]:
        """Expand the pattern from ``dtstart`` (capped at ``limit`` instances)."""
        dtstart = _aware(dtstart)
        until = self.until
        if until is not None and dtstart.tzinfo is not None:
            until = until.astimezone(dtstart.tzinfo)
        rule = rrule(
            _RRULE_FREQ[self.frequency],
            dtstart=dtstart,
            interval=self.interval,
            byweekday=[WEEKDAY_CODES[d] for d in sorted(self.by_day)] or None,
            count=self.count,
            until=until,
        )
        result = []
        for occurrence in rule:
            result.append(occurrence)
            if len(result) >= limit:
                break
        return result


class RecurrenceException(BaseModel):
    """An occurrence of a series that diverges from or cancels the pattern."""

    original_start: datetime = Field(..., description="Pattern-computed start (join key)")
    cancelled: bool = Field(False, description="Occurrence is cancelled")
    override: Optional["CalendarEvent"] = Field(None, description="Modified occurrence")

    @field_validator("original_start", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, v):
        return _aware(v)


class CalendarEvent(BaseModel):
    """Provider-neutral calendar event."""

    id: str = Field("", description="Event ID, unique within its provider")
    source: Side = Field(..., description="Side the event belongs to")
    recurring_event_id: Optional[str] = Field(
        None, description="Parent series ID (generated occurrences only)"
    )
    summary: str = Field("", description="Event title/summary")
    description: Optional[str] = Field(None, description="Event description")
    location: Optional[str] = Field(None, description="Event location")
    start: Optional[datetime] = Field(None, description="Event start time")
    end: Optional[datetime] = Field(None, description="Event end time")
    all_day: bool = Field(False, description="Whether event is all-day")
    start_timezone: Optional[str] = Field(None, description="IANA timezone of the start")
    end_timezone: Optional[str] = Field(None, description="IANA timezone of the end")
    visibility: Visibility = Field(Visibility.PUBLIC)
    transparency: Transparency = Field(Transparency.BUSY)
    organizer: Optional[str] = Field(None, description="Organizer email address")
    attendees: List[Attendee] = Field(default_factory=list)
    reminders: List[Reminder] = Field(default_factory=list)
    created: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    updated: datetime = Field(
        default_factory=lambda: datetime.now(pytz.UTC),
        description="Authoritative last-modified instant",
    )
    recurrence: Optional[RecurrenceRule] = Field(None, description="Series pattern")
    exceptions: List[RecurrenceException] = Field(default_factory=list)
    extended_properties: Dict[str, str] = Field(
        default_factory=dict, description="Opaque key/value metadata"
    )

    @field_validator("start", "end", "created", "updated", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return _aware(v)

    @model_validator(mode="after")
    def end_not_before_start(self):
        """Ensure end time is not before start time."""
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError(
                f"End time ({self.end}) must not be before start time ({self.start})"
            )
        return self

    @property
    def duration(self) -> Optional[timedelta]:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start

    def has_core_fields(self) -> bool:
        return bool(self.id) and self.start is not None and self.end is not None

    def popup_reminder(self) -> Optional[Reminder]:
        """First popup reminder, the only kind that is synchronised."""
        for reminder in self.reminders:
            if reminder.method == "popup":
                return reminder
        return None

    def summary_line(self) -> str:
        """Short human readable description used in logs."""
        if self.start is None:
            when = "??"
        elif self.all_day:
            when = self.start.date().isoformat()
        else:
            when = self.start.strftime("%Y-%m-%d %H:%M")
        marker = "(R) " if self.recurrence is not None else ""
        return f'{when} {marker}=> "{self.summary}"'


RecurrenceException.model_rebuild()


class IdentityLink(BaseModel):
    """Cross-reference metadata stored on an item."""

    foreign_event_id: Optional[str] = None
    foreign_collection_id: Optional[str] = None
    engine_last_modified: Optional[datetime] = None
    force_resync: bool = False

    @property
    def is_complete(self) -> bool:
        return bool(self.foreign_event_id and self.foreign_collection_id)


class DiffResult(BaseModel):
    """Outcome of comparing one matched pair."""

    mutations: int = 0
    change_log: List[str] = Field(default_factory=list)
    target: CalendarEvent
    compared: bool = True
    needs_touch: bool = False


class SyncReport(BaseModel):
    """Report for one sync run."""

    sync_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)
    dry_run: bool = Field(False)
    direction: SyncDirection = Field(SyncDirection.RIGHT_TO_LEFT)

    created: int = Field(0)
    updated: int = Field(0)
    deleted: int = Field(0)
    skipped: int = Field(0)
    reclaimed: int = Field(0)
    metadata_enhanced: int = Field(0)
    suppressed_deletions: int = Field(0)
    cancelled: bool = Field(False)

    errors: List[str] = Field(default_factory=list)
    changes: List[str] = Field(default_factory=list)

    @property
    def total_operations(self) -> int:
        return self.created + self.updated + self.deleted


@dataclass
class MatchSet:
    """Result of pairing left and right items for one pass."""

    paired: List[Tuple[CalendarEvent, CalendarEvent]] = field(default_factory=list)
    left_only: List[CalendarEvent] = field(default_factory=list)
    right_only: List[CalendarEvent] = field(default_factory=list)
    reclaimed: List[Tuple[CalendarEvent, CalendarEvent]] = field(default_factory=list)
    merged: List[CalendarEvent] = field(default_factory=list)
    skipped: List[CalendarEvent] = field(default_factory=list)
    metadata_enhanced: int = 0
    suppressed_deletions: int = 0

    def delete_candidates(self, direction: SyncDirection) -> List[CalendarEvent]:
        """Items to delete when writing in ``direction``."""
        return self.left_only if direction.destination is Side.LEFT else self.right_only

    def create_candidates(self, direction: SyncDirection) -> List[CalendarEvent]:
        """Items to create when writing in ``direction``."""
        return self.right_only if direction.destination is Side.LEFT else self.left_only


@dataclass
class SyncContext:
    """Explicit per-pass context shared by the matcher, differ and reconciler."""

    policy: "SyncPolicy"
    right_calendar_id: Optional[str] = None
    left_calendar_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    owner_email: Optional[str] = None
    manual_force_compare: bool = False
    default_reminder_minutes: Optional[int] = None

    def collection_id(self, side: Side) -> Optional[str]:
        return self.right_calendar_id if side is Side.RIGHT else self.left_calendar_id
