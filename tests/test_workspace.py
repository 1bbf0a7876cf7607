from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import threading

import pytest

from issuesmith.shell import CommandError
from issuesmith.workspace import WorkspaceError, WorkspaceManager, _safe_name


@dataclass
class FakeLayout:
    mirror_path: Path
    workspaces_root: Path


class FakeGit:
    def __init__(self, root: Path) -> None:
        self.layout = FakeLayout(mirror_path=root / "mirror.git", workspaces_root=root / "ws")
        self.layout.workspaces_root.mkdir(parents=True)
        self.calls: list[tuple[str, str]] = []
        self.add_failures = 0
        self.write_git_link = True
        self.remove_fails = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter_lock = threading.Lock()

    def _enter(self, name: str, detail: str) -> None:
        with self._counter_lock:
            self.calls.append((name, detail))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        threading.Event().wait(0.01)
        with self._counter_lock:
            self.in_flight -= 1

    def ensure_layout(self) -> None:
        self._enter("ensure_layout", "")

    def fetch_branch(self, branch: str) -> None:
        self._enter("fetch", branch)

    def add_worktree(self, path: Path, branch: str) -> None:
        self._enter("add", path.name)
        path.mkdir(parents=True, exist_ok=True)
        if self.add_failures > 0:
            self.add_failures -= 1
            raise CommandError("worktree add failed")
        if self.write_git_link:
            (path / ".git").write_text("gitdir: somewhere\n", encoding="utf-8")

    def remove_worktree(self, path: Path) -> None:
        self._enter("remove", path.name)
        if self.remove_fails:
            raise CommandError("not a worktree")

    def prune_worktrees(self) -> None:
        self._enter("prune", "")

    def push_head(self, workspace: Path, branch: str) -> None:
        self._enter("push", branch)


def test_acquire_creates_unique_isolated_workspaces(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    manager = WorkspaceManager(git)  # type: ignore[arg-type]

    first = manager.acquire("work/issue-42-fix-typo")
    second = manager.acquire("work/issue-42-fix-typo")

    assert first != second
    assert first.parent == git.layout.workspaces_root
    assert first.name.startswith("issue-work-issue-42-fix-typo-")
    assert (first / ".git").exists()
    assert manager.active_paths() == frozenset({first, second})
    assert ("fetch", "work/issue-42-fix-typo") in git.calls

    manager.release(first)
    assert manager.active_paths() == frozenset({second})
    assert first.exists()


def test_acquire_retries_once_after_cleanup(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    git.add_failures = 1
    git.remove_fails = True
    manager = WorkspaceManager(git)  # type: ignore[arg-type]

    path = manager.acquire("main", purpose="conflict")

    assert path.name.startswith("conflict-main-")
    assert [name for name, _ in git.calls].count("add") == 2
    assert (path / ".git").exists()


def test_acquire_raises_workspace_error_after_second_failure(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    git.add_failures = 2
    manager = WorkspaceManager(git)  # type: ignore[arg-type]

    with pytest.raises(WorkspaceError, match="Could not materialize"):
        manager.acquire("main")
    assert manager.active_paths() == frozenset()


def test_acquire_rejects_workspace_without_git_link(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    git.write_git_link = False
    manager = WorkspaceManager(git)  # type: ignore[arg-type]

    with pytest.raises(WorkspaceError, match="missing its git link"):
        manager.acquire("main")
    assert list(git.layout.workspaces_root.iterdir()) == []


def test_discard_removes_directory(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    manager = WorkspaceManager(git)  # type: ignore[arg-type]
    path = manager.acquire("main")

    manager.discard(path)

    assert not path.exists()
    assert manager.active_paths() == frozenset()


def test_mirror_operations_are_serialized(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    manager = WorkspaceManager(git)  # type: ignore[arg-type]
    barrier = threading.Barrier(6)

    def worker(index: int) -> None:
        barrier.wait()
        path = manager.acquire(f"branch-{index}")
        manager.push(path, f"branch-{index}")

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert git.max_in_flight == 1
    assert len(manager.active_paths()) == 6


def test_sweep_removes_only_old_inactive_workspaces(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    now = 1_000_000.0
    manager = WorkspaceManager(git, clock=lambda: now)  # type: ignore[arg-type]
    active = manager.acquire("active")
    stale = git.layout.workspaces_root / "issue-stale-abcd"
    fresh = git.layout.workspaces_root / "issue-fresh-abcd"
    stale.mkdir()
    fresh.mkdir()
    old = now - 100 * 3600
    os.utime(stale, (old, old))
    os.utime(active, (old, old))
    os.utime(fresh, (now, now))

    assert manager.sweep_due(600) is True
    removed = manager.sweep(max_age_hours=72)

    assert removed == (stale,)
    assert active.exists()
    assert fresh.exists()
    assert not stale.exists()
    assert manager.sweep_due(600) is False


def test_sweep_without_root_is_noop(tmp_path: Path) -> None:
    git = FakeGit(tmp_path)
    git.layout.workspaces_root.rmdir()
    manager = WorkspaceManager(git)  # type: ignore[arg-type]

    assert manager.sweep(max_age_hours=1) == ()


def test_safe_name() -> None:
    assert _safe_name("work/issue-42-fix-typo") == "work-issue-42-fix-typo"
    assert _safe_name("///") == "branch"
    assert len(_safe_name("x" * 200)) == 60
