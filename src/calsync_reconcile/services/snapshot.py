"""JSON snapshot provider.

Holds a collection in memory and, optionally, persists it back to a JSON
file (a list of serialised events). Used by the command line for offline
runs and by the test-suite as a fake provider.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError
import pytz

from .base import (
    BaseCalendarService,
    CalendarServiceError,
    ConnectionUnavailableError,
    EventNotFoundError,
)
from ..models import CalendarEvent, Side

_EVENT_LIST = TypeAdapter(List[CalendarEvent])


class SnapshotCalendarService(BaseCalendarService):
    """In-memory calendar, optionally backed by a JSON file."""

    def __init__(
        self,
        side: Side,
        calendar_id: Optional[str] = None,
        path: Optional[Path] = None,
        events: Optional[List[CalendarEvent]] = None,
        autosave: bool = False,
        default_reminder_minutes: Optional[int] = None,
    ):
        super().__init__(side, calendar_id)
        self.default_reminder_minutes = default_reminder_minutes
        self.path = Path(path) if path else None
        self.autosave = autosave
        self.events: Dict[str, CalendarEvent] = {}
        self.released: List[str] = []
        for event in events or []:
            self.events[event.id] = event

    async def connect(self) -> None:
        if self.path is not None:
            if not self.path.exists():
                raise ConnectionUnavailableError(f"Snapshot file not found: {self.path}")
            try:
                loaded = _EVENT_LIST.validate_json(self.path.read_text(encoding="utf-8"))
            except (ValidationError, ValueError) as e:
                raise ConnectionUnavailableError(f"Unreadable snapshot {self.path}: {e}")
            self.events = {}
            for event in loaded:
                event.source = self.side
                self.events[event.id] = event
        self._connected = True
        self.logger.debug(f"Loaded {len(self.events)} events for {self.side.value}")

    async def list_events(
        self,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        self._ensure_connected()
        result = []
        for event in self.events.values():
            if event.recurrence is None and event.start is not None and event.end is not None:
                if time_max is not None and event.start >= time_max:
                    continue
                if time_min is not None and event.end < time_min:
                    continue
            # Callers mutate what they get; hand out copies like a real provider would
            result.append(event.model_copy(deep=True))
        return result

    async def create_event(self, event: CalendarEvent) -> CalendarEvent:
        self._ensure_connected()
        created = event.model_copy(deep=True)
        created.id = created.id or uuid4().hex
        if created.id in self.events:
            raise CalendarServiceError(f"Event {created.id} already exists")
        created.source = self.side
        created.updated = datetime.now(pytz.UTC)
        self.events[created.id] = created
        self._autosave()
        return created.model_copy(deep=True)

    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        self._ensure_connected()
        if event.id not in self.events:
            raise EventNotFoundError(f"Event {event.id} not found")
        saved = event.model_copy(deep=True)
        saved.updated = datetime.now(pytz.UTC)
        self.events[event.id] = saved
        event.updated = saved.updated
        self._autosave()
        return saved.model_copy(deep=True)

    async def delete_event(self, event: CalendarEvent) -> None:
        self._ensure_connected()
        if self.events.pop(event.id, None) is None:
            raise EventNotFoundError(f"Event {event.id} not found")
        self._autosave()

    async def _release(self, event: CalendarEvent) -> None:
        self.released.append(event.id)

    def _autosave(self) -> None:
        if self.autosave:
            self.flush()

    def flush(self) -> None:
        """Write the collection back to its snapshot file."""
        if self.path is None:
            return
        payload = [
            json.loads(event.model_dump_json())
            for event in sorted(self.events.values(), key=lambda e: e.id)
        ]
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
