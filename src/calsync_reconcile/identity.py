"""Cross-reference metadata kept on synchronised items."""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from dateutil.parser import isoparse
import pytz

from .models import CalendarEvent, IdentityLink
from .timeutils import normalize_instant

logger = logging.getLogger(__name__)


class MetadataId(str, Enum):
    """Metadata keys as stored in an item's extended properties."""

    FOREIGN_EVENT_ID = "foreignEventId"
    FOREIGN_COLLECTION_ID = "foreignCollectionId"
    ENGINE_LAST_MODIFIED = "engineLastModified"
    FORCE_RESYNC = "forceResync"


class IdentityStore:
    """Reads and writes link metadata on an item.

    Links are never inferred: an item is linked only when the ids were
    explicitly written here. Every write is idempotent and reports whether
    the item actually changed, so that rewriting an identical value never
    looks like a modification of the underlying item.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('identity_store')

    def now(self) -> datetime:
        return self._clock()

    # Raw property access

    def _get(self, item: CalendarEvent, key: MetadataId) -> Optional[str]:
        value = item.extended_properties.get(key.value)
        if value is None or value == "":
            return None
        return value

    def _set(self, item: CalendarEvent, key: MetadataId, value: str) -> bool:
        if item.extended_properties.get(key.value) == value:
            return False
        item.extended_properties[key.value] = value
        return True

    def _remove(self, item: CalendarEvent, key: MetadataId) -> bool:
        if key.value not in item.extended_properties:
            return False
        del item.extended_properties[key.value]
        self.logger.debug(f"Removed {key.value} property.")
        return True

    # Links

    def get_link(self, item: CalendarEvent) -> Optional[IdentityLink]:
        """Return the stored link, or None when the item carries no metadata."""
        if not self.has_any_link(item) and self._get(item, MetadataId.ENGINE_LAST_MODIFIED) is None:
            return None
        return IdentityLink(
            foreign_event_id=self._get(item, MetadataId.FOREIGN_EVENT_ID),
            foreign_collection_id=self._get(item, MetadataId.FOREIGN_COLLECTION_ID),
            engine_last_modified=self.get_engine_last_modified(item),
            force_resync=self.is_force_resync(item),
        )

    def get_foreign_event_id(self, item: CalendarEvent) -> Optional[str]:
        return self._get(item, MetadataId.FOREIGN_EVENT_ID)

    def get_foreign_collection_id(self, item: CalendarEvent) -> Optional[str]:
        return self._get(item, MetadataId.FOREIGN_COLLECTION_ID)

    def set_link(
        self,
        item: CalendarEvent,
        foreign_id: str,
        foreign_collection_id: Optional[str],
    ) -> bool:
        changed = self._set(item, MetadataId.FOREIGN_EVENT_ID, foreign_id)
        if foreign_collection_id:
            changed = self._set(item, MetadataId.FOREIGN_COLLECTION_ID, foreign_collection_id) or changed
        return changed

    def has_any_link(self, item: CalendarEvent) -> bool:
        return (
            self._get(item, MetadataId.FOREIGN_EVENT_ID) is not None
            or self._get(item, MetadataId.FOREIGN_COLLECTION_ID) is not None
        )

    def clear_link(self, item: CalendarEvent) -> bool:
        removed_event = self._remove(item, MetadataId.FOREIGN_EVENT_ID)
        removed_collection = self._remove(item, MetadataId.FOREIGN_COLLECTION_ID)
        return removed_event or removed_collection

    def link_missing_fields(self, item: CalendarEvent) -> List[str]:
        """Names of the id keys the item lacks (empty when fully linked)."""
        missing = [
            key.value
            for key in (MetadataId.FOREIGN_EVENT_ID, MetadataId.FOREIGN_COLLECTION_ID)
            if self._get(item, key) is None
        ]
        if missing:
            self.logger.warning(
                f"Found item missing link ids ({'|'.join(missing)}). {item.summary_line()}"
            )
        return missing

    def ids_match(
        self,
        item: CalendarEvent,
        foreign_item: CalendarEvent,
        collection_id: Optional[str],
    ) -> bool:
        """Whether the link on ``item`` points at ``foreign_item``.

        A link whose collection id is absent is accepted on the event id
        alone, with a warning. A collection id that is present but points
        at another collection is not a match.
        """
        if self.get_foreign_event_id(item) != foreign_item.id:
            self.logger.warning("Could not find foreign event ID against item.")
            return False

        stored_collection = self.get_foreign_collection_id(item)
        if stored_collection is None:
            self.logger.warning("Could not find foreign calendar ID against item.")
            return True
        if collection_id is not None and stored_collection != collection_id:
            self.logger.warning(
                f"Item is linked to calendar {stored_collection}, not {collection_id}."
            )
            return False
        return True

    # Force resync flag

    def is_force_resync(self, item: CalendarEvent) -> bool:
        return (self._get(item, MetadataId.FORCE_RESYNC) or "").lower() == "true"

    def mark_force_resync(self, item: CalendarEvent) -> bool:
        return self._set(item, MetadataId.FORCE_RESYNC, "True")

    def clear_force_resync(self, item: CalendarEvent) -> bool:
        return self._remove(item, MetadataId.FORCE_RESYNC)

    # Engine write stamp

    def get_engine_last_modified(self, item: CalendarEvent) -> Optional[datetime]:
        raw = self._get(item, MetadataId.ENGINE_LAST_MODIFIED)
        if raw is None:
            return None
        try:
            return normalize_instant(isoparse(raw))
        except ValueError:
            self.logger.warning(f"Unreadable {MetadataId.ENGINE_LAST_MODIFIED.value} value {raw!r}")
            return None

    def set_engine_last_modified(self, item: CalendarEvent, now: Optional[datetime] = None) -> bool:
        stamp = normalize_instant(now or self.now())
        return self._set(item, MetadataId.ENGINE_LAST_MODIFIED, stamp.isoformat())
