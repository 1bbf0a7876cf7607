from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
import logging
import re
import secrets
import shutil
import threading
import time

from issuesmith.git_ops import GitRepoManager
from issuesmith.observability import log_event, log_warning
from issuesmith.shell import CommandError


LOGGER = logging.getLogger("issuesmith.workspace")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorkspaceError(RuntimeError):
    pass


class WorkspaceManager:
    """Detached worktrees of one repository's shared mirror.

    Every mutation of the mirror (fetch, push, worktree add/remove/prune) runs
    under a single per-mirror lock. Work inside a materialized workspace does
    not take the lock.
    """

    def __init__(
        self,
        git: GitRepoManager,
        *,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._git = git
        self._clock = clock
        self._monotonic = monotonic
        self._mirror_lock = threading.Lock()
        self._active_lock = threading.Lock()
        self._active: set[Path] = set()
        self._last_sweep: float | None = None

    @property
    def root(self) -> Path:
        return self._git.layout.workspaces_root

    def prepare(self) -> None:
        with self._mirror_lock:
            self._git.ensure_layout()

    def acquire(self, branch: str, *, purpose: str = "issue") -> Path:
        path = self.root / f"{purpose}-{_safe_name(branch)}-{secrets.token_hex(4)}"
        with self._mirror_lock:
            self._git.fetch_branch(branch)
            try:
                self._git.add_worktree(path, branch)
            except CommandError as exc:
                log_warning(
                    LOGGER,
                    "workspace_add_retry",
                    path=str(path),
                    branch=branch,
                    error_type=type(exc).__name__,
                )
                self._force_remove(path)
                try:
                    self._git.add_worktree(path, branch)
                except CommandError as retry_exc:
                    raise WorkspaceError(
                        f"Could not materialize workspace for {branch} at {path}"
                    ) from retry_exc
            if not (path / ".git").exists():
                self._force_remove(path)
                raise WorkspaceError(f"Workspace at {path} is missing its git link")
        with self._active_lock:
            self._active.add(path)
        log_event(LOGGER, "workspace_acquired", path=str(path), branch=branch, purpose=purpose)
        return path

    def release(self, path: Path) -> None:
        """Forget the workspace. The directory stays on disk for inspection."""
        with self._active_lock:
            self._active.discard(path)
        log_event(LOGGER, "workspace_released", path=str(path))

    def discard(self, path: Path) -> None:
        """Tear a workspace down immediately. Only forced cancellation does this."""
        with self._active_lock:
            self._active.discard(path)
        with self._mirror_lock:
            self._force_remove(path)
        log_event(LOGGER, "workspace_discarded", path=str(path))

    def fetch_branch(self, branch: str) -> None:
        with self._mirror_lock:
            self._git.fetch_branch(branch)

    def push(self, workspace: Path, branch: str) -> None:
        with self._mirror_lock:
            self._git.push_head(workspace, branch)

    def active_paths(self) -> frozenset[Path]:
        with self._active_lock:
            return frozenset(self._active)

    def sweep_due(self, interval_seconds: float) -> bool:
        return self._last_sweep is None or self._monotonic() - self._last_sweep >= interval_seconds

    def sweep(self, *, max_age_hours: float, time_budget_seconds: float = 60.0) -> tuple[Path, ...]:
        """Reclaim inactive workspaces older than max_age_hours, then prune the index."""
        self._last_sweep = self._monotonic()
        if not self.root.exists():
            return ()
        started = self._monotonic()
        cutoff = self._clock() - max_age_hours * 3600
        active = self.active_paths()
        removed: list[Path] = []
        with self._mirror_lock:
            for candidate in sorted(self.root.iterdir()):
                if self._monotonic() - started > time_budget_seconds:
                    log_warning(LOGGER, "workspace_sweep_budget_exhausted", root=str(self.root))
                    break
                if not candidate.is_dir() or candidate in active:
                    continue
                try:
                    modified = candidate.stat().st_mtime
                except FileNotFoundError:
                    continue
                if modified >= cutoff:
                    continue
                self._force_remove(candidate)
                removed.append(candidate)
            try:
                self._git.prune_worktrees()
            except CommandError:
                log_warning(LOGGER, "workspace_prune_failed", root=str(self.root))
        log_event(
            LOGGER,
            "workspace_sweep_finished",
            root=str(self.root),
            removed_count=len(removed),
        )
        return tuple(removed)

    def _force_remove(self, path: Path) -> None:
        # Caller holds the mirror lock.
        try:
            self._git.remove_worktree(path)
        except CommandError:
            # Not registered as a worktree (half-created or already pruned).
            log_event(LOGGER, "workspace_remove_skipped", path=str(path))
        try:
            self._git.prune_worktrees()
        except CommandError:
            log_warning(LOGGER, "workspace_prune_failed", path=str(path))
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)


def _safe_name(branch: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("-", branch).strip("-.")
    return cleaned[:60] or "branch"
