"""Change tracking shared by the attribute differ and the recurrence reconciler."""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from .models import SyncDirection
from .timeutils import normalize_instant

logger = logging.getLogger(__name__)


class ChangeTracker:
    """Accumulates the change log and mutation count of one compare."""

    def __init__(self, direction: SyncDirection, header: Optional[str] = None):
        self.direction = direction
        self.header = header
        self.mutations = 0
        self.lines: List[str] = []

    def add(self, line: str) -> None:
        self.lines.append(line)
        self.mutations += 1

    def extend(self, other: "ChangeTracker", prefix: str = "") -> None:
        self.lines.extend(prefix + line for line in other.lines)
        self.mutations += other.mutations

    def render(self) -> str:
        lines = [self.header] if self.header else []
        return "\n".join(lines + self.lines)


def _normalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return normalize_instant(value)
    if isinstance(value, (set, frozenset)):
        return frozenset(value)
    return value


def _display(value: Any) -> str:
    value = _normalize(value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, frozenset):
        return ",".join(sorted(str(v) for v in value))
    return str(value)


def compare_attribute(
    name: str,
    direction: SyncDirection,
    new_value: Any,
    old_value: Any,
    tracker: ChangeTracker,
) -> bool:
    """Compare the source value against the destination's current value.

    Values that differ only in representation (timestamps in other zones or
    with sub-second digits, enums against their raw values, None against
    an empty string) are equal. A real change is logged as
    ``name: old => new`` and counted.

    Returns:
        True when the destination needs updating
    """
    if _normalize(new_value) == _normalize(old_value):
        return False
    line = f"{name}: {_display(old_value)} => {_display(new_value)}"
    logger.debug(f"[{direction.value}] {line}")
    tracker.add(line)
    return True
