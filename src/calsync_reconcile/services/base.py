"""Provider collaborator interface used by the sync engine."""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional
import logging

from ..models import CalendarEvent, Side

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class ConnectionUnavailableError(CalendarServiceError):
    """The provider connection required for a pass is unavailable."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


class BaseCalendarService(ABC):
    """Abstract base class for the two provider collaborators."""

    def __init__(self, side: Side, calendar_id: Optional[str] = None):
        """Initialize calendar service.

        Args:
            side: Which side of the sync this provider serves
            calendar_id: Collection used by the sync
        """
        self.side = side
        self.calendar_id = calendar_id
        self.logger = logger.getChild(side.value)
        self._connected = False
        # Minutes of the reminder the provider adds by default, if known
        self.default_reminder_minutes: Optional[int] = None

    @abstractmethod
    async def connect(self) -> None:
        """Open the provider connection.

        Raises:
            ConnectionUnavailableError: If the collection cannot be reached
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        """Return the series masters and standalone items in the window.

        Raises:
            CalendarServiceError: If events cannot be retrieved
        """
        pass

    @abstractmethod
    async def create_event(self, event: CalendarEvent) -> CalendarEvent:
        """Create a new event and return it with its provider id.

        Raises:
            CalendarServiceError: If event cannot be created
        """
        pass

    @abstractmethod
    async def save_event(self, event: CalendarEvent) -> CalendarEvent:
        """Persist an existing, modified event.

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be saved
        """
        pass

    @abstractmethod
    async def delete_event(self, event: CalendarEvent) -> None:
        """Delete an event.

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be deleted
        """
        pass

    @asynccontextmanager
    async def item_scope(self, event: CalendarEvent) -> AsyncIterator[CalendarEvent]:
        """Hold the provider handle of ``event`` for one loop iteration.

        The handle is released on every exit path. Providers backed by
        native handles override ``_release``.
        """
        try:
            yield event
        finally:
            await self._release(event)

    async def _release(self, event: CalendarEvent) -> None:
        return None

    def _ensure_connected(self):
        """Ensure the service is connected.

        Raises:
            ConnectionUnavailableError: If not connected
        """
        if not self._connected:
            raise ConnectionUnavailableError(f"{self.side.value} provider not connected")
