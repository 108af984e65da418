"""Human confirmation gate consulted when a sync pass hits trouble."""

import logging
from typing import List, Optional, Tuple

from rich.console import Console
from rich.prompt import Confirm

logger = logging.getLogger(__name__)


class ConfirmationGate:
    """Answers yes/no questions raised during a pass.

    ``auto_answer`` short-circuits every question (the auto-retry setting);
    otherwise the base gate falls back to each question's default.
    """

    def __init__(self, auto_answer: Optional[bool] = None):
        self.auto_answer = auto_answer
        self.asked: List[Tuple[str, bool]] = []

    def confirm(self, question: str, default: bool = True) -> bool:
        if self.auto_answer is not None:
            answer = self.auto_answer
        else:
            answer = self._ask(question, default)
        self.asked.append((question, answer))
        logger.debug(f"Gate: {question!r} -> {answer}")
        return answer

    def _ask(self, question: str, default: bool) -> bool:
        return default


class ScriptedGate(ConfirmationGate):
    """Replays a fixed list of answers, then the default."""

    def __init__(self, answers: List[bool]):
        super().__init__()
        self._answers = list(answers)

    def _ask(self, question: str, default: bool) -> bool:
        if self._answers:
            return self._answers.pop(0)
        return default


class ConsoleGate(ConfirmationGate):
    """Asks on the terminal."""

    def __init__(self, console: Optional[Console] = None, auto_answer: Optional[bool] = None):
        super().__init__(auto_answer)
        self.console = console or Console()

    def _ask(self, question: str, default: bool) -> bool:
        return Confirm.ask(question, console=self.console, default=default)
