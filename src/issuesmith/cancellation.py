from __future__ import annotations

import threading
from typing import Literal


Checkpoint = Literal["before_workspace", "before_agent", "after_agent", "before_push"]

# Cancellation observed after the last checkpoint is best-effort: the push has
# already happened and the job finishes normally.
CHECKPOINTS: tuple[Checkpoint, ...] = (
    "before_workspace",
    "before_agent",
    "after_agent",
    "before_push",
)


class TaskCancelledError(RuntimeError):
    def __init__(self, checkpoint: str, *, forced: bool) -> None:
        super().__init__(f"Task cancelled at {checkpoint}")
        self.checkpoint = checkpoint
        self.forced = forced


class CancellationToken:
    """Thread-safe cancellation flag passed through every suspend point of a task."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._forced = False
        self._reason: str | None = None

    def cancel(self, *, force: bool = False, reason: str | None = None) -> None:
        with self._lock:
            self._forced = self._forced or force
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def forced(self) -> bool:
        with self._lock:
            return self._forced

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def checkpoint(self, name: Checkpoint) -> None:
        if self._event.is_set():
            raise TaskCancelledError(name, forced=self.forced)

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)
