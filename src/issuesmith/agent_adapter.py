from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
import re

from issuesmith.cancellation import CancellationToken


CLARIFICATION_SENTINEL = "NEED_CLARIFICATION:"
_MAX_CLARIFICATION_CHARS = 2000
_CLARIFICATION_PATTERN = re.compile(
    r"NEED_CLARIFICATION:[ \t]*([^\n]{0,%d})" % _MAX_CLARIFICATION_CHARS, re.IGNORECASE
)
_FALLBACK_CLARIFICATION = "The agent needs more information to continue. Please add details."


@dataclass(frozen=True)
class AgentResult:
    success: bool
    summary: str
    files_changed: tuple[str, ...]
    timed_out: bool = False

    @property
    def has_changes(self) -> bool:
        # A failed or timed-out run that touched files still produced work worth keeping.
        return bool(self.files_changed)


class AgentFailedError(RuntimeError):
    pass


class AgentAdapter(ABC):
    @abstractmethod
    def run_task(
        self,
        *,
        cwd: Path,
        prompt: str,
        model_hint: str | None,
        cancel: CancellationToken,
    ) -> AgentResult:
        """Let the agent edit files under cwd. Long-running; honors forced cancellation."""

    @abstractmethod
    def ask(self, *, cwd: Path, prompt: str) -> str:
        """One-shot read-only question; returns the agent's final text reply."""


def extract_clarification(summary: str) -> str | None:
    """Return the clarification question if the summary carries the sentinel."""
    if CLARIFICATION_SENTINEL.lower() not in summary.lower():
        return None
    match = _CLARIFICATION_PATTERN.search(summary)
    if match is None:
        return _FALLBACK_CLARIFICATION
    question = match.group(1).strip()
    return question or _FALLBACK_CLARIFICATION
