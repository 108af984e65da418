"""Provider collaborator interfaces and implementations."""

from .base import (
    BaseCalendarService,
    CalendarServiceError,
    ConnectionUnavailableError,
    EventNotFoundError,
)
from .snapshot import SnapshotCalendarService

__all__ = [
    'BaseCalendarService',
    'CalendarServiceError',
    'ConnectionUnavailableError',
    'EventNotFoundError',
    'SnapshotCalendarService',
]
