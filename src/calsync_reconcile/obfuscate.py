"""Subject obfuscation filter."""

import logging
import re
from typing import List, Optional, Pattern, Tuple

from .config import SyncPolicy
from .models import SyncDirection

logger = logging.getLogger(__name__)


class Obfuscator:
    """Regex find/replace rules applied to subjects written in one direction."""

    def __init__(self, policy: SyncPolicy):
        self.enabled = policy.obfuscate_subjects
        self.direction = policy.obfuscation_direction
        self._rules: List[Tuple[Pattern, str]] = []
        for rule in policy.obfuscation_rules:
            try:
                self._rules.append((re.compile(rule.find), rule.replace))
            except re.error as e:
                logger.warning(f"Ignoring invalid obfuscation regex {rule.find!r}: {e}")

    def applies_to(self, direction: SyncDirection) -> bool:
        return self.enabled and bool(self._rules) and direction == self.direction

    def apply(self, subject: Optional[str], direction: SyncDirection) -> str:
        """Return ``subject`` as it should be written in ``direction``."""
        subject = subject or ""
        if not self.applies_to(direction):
            return subject
        for pattern, replacement in self._rules:
            subject = pattern.sub(replacement, subject)
        return subject
