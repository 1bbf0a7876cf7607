from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
import logging
import re
import time

from issuesmith.config import RepoConfig, RuntimeConfig
from issuesmith.observability import log_event
from issuesmith.retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_backoff
from issuesmith.shell import CommandError, CommandTimeoutError, run


LOGGER = logging.getLogger("issuesmith.git_ops")

_NETWORK_FAILURE_MARKERS = (
    "could not resolve host",
    "temporary failure in name resolution",
    "connection timed out",
    "connection refused",
    "connection reset",
    "operation timed out",
    "early eof",
    "the remote end hung up unexpectedly",
    "rpc failed",
    "tls connection",
    "gnutls_handshake",
    "the requested url returned error: 5",
)
_CONFLICT_MARKER = re.compile(r"^(?:<{7}|>{7})(?: |$)", re.MULTILINE)


def is_transient_git_error(exc: BaseException) -> bool:
    if isinstance(exc, CommandTimeoutError):
        return True
    if not isinstance(exc, CommandError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _NETWORK_FAILURE_MARKERS)


@dataclass(frozen=True)
class RepoLayout:
    mirror_path: Path
    workspaces_root: Path


class GitRepoManager:
    """Thin command layer over one repository's bare mirror and its worktrees.

    Callers are responsible for serializing mirror mutations (fetch, push,
    worktree add/remove/prune); WorkspaceManager does that.
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        repo: RepoConfig,
        *,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runtime = runtime
        self.repo = repo
        self.retry_policy = retry_policy
        self._sleep = sleep
        self.layout = RepoLayout(
            mirror_path=runtime.base_dir / "repos" / repo.owner / f"{repo.name}.git",
            workspaces_root=runtime.base_dir / "workspaces" / repo.owner / repo.name,
        )

    def ensure_layout(self) -> None:
        self.layout.mirror_path.parent.mkdir(parents=True, exist_ok=True)
        self.layout.workspaces_root.mkdir(parents=True, exist_ok=True)
        self._ensure_mirror()

    def fetch_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_fetch_branch", repo=self.repo.full_name, branch=branch)
        self._with_network_retry(
            [
                "git",
                f"--git-dir={self.layout.mirror_path}",
                "fetch",
                "origin",
                f"+refs/heads/{branch}:refs/heads/{branch}",
            ],
            operation=f"git fetch {branch}",
        )

    def add_worktree(self, path: Path, branch: str) -> None:
        log_event(LOGGER, "git_worktree_add", path=str(path), branch=branch)
        run(
            [
                "git",
                f"--git-dir={self.layout.mirror_path}",
                "worktree",
                "add",
                "--detach",
                str(path),
                f"refs/heads/{branch}",
            ]
        )

    def remove_worktree(self, path: Path) -> None:
        log_event(LOGGER, "git_worktree_remove", path=str(path))
        run(
            [
                "git",
                f"--git-dir={self.layout.mirror_path}",
                "worktree",
                "remove",
                "--force",
                str(path),
            ]
        )

    def prune_worktrees(self) -> None:
        run(["git", f"--git-dir={self.layout.mirror_path}", "worktree", "prune"])

    def merge_branch(self, workspace: Path, branch: str) -> bool:
        """Merge refs/heads/<branch> into the workspace HEAD; False leaves conflicts in place."""
        log_event(LOGGER, "git_merge_branch", workspace=str(workspace), branch=branch)
        try:
            run(["git", "-C", str(workspace), "merge", "--no-edit", f"refs/heads/{branch}"])
        except CommandError:
            return False
        return True

    def conflicted_files(self, workspace: Path, paths: tuple[str, ...] = ()) -> tuple[str, ...]:
        """Paths with unmerged index entries, optionally limited to paths."""
        cmd = ["git", "-C", str(workspace), "diff", "--name-only", "--diff-filter=U"]
        if paths:
            cmd.extend(["--", *paths])
        output = run(cmd)
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def stage_files(self, workspace: Path, paths: tuple[str, ...]) -> None:
        if paths:
            run(["git", "-C", str(workspace), "add", "-A", "--", *paths])

    def keep_current_side(self, workspace: Path, paths: tuple[str, ...]) -> None:
        """Settle conflicts in paths by keeping the checked-out branch's version."""
        if not paths:
            return
        run(["git", "-C", str(workspace), "checkout", "--ours", "--", *paths])
        self.stage_files(workspace, paths)

    def files_with_conflict_markers(
        self, workspace: Path, paths: tuple[str, ...]
    ) -> tuple[str, ...]:
        marked: list[str] = []
        for rel_path in paths:
            target = workspace / rel_path
            if not target.is_file():
                continue
            text = target.read_text(encoding="utf-8", errors="replace")
            if _CONFLICT_MARKER.search(text):
                marked.append(rel_path)
        return tuple(marked)

    def commit_all(self, workspace: Path, message: str) -> bool:
        """Stage everything and commit. Returns False when there was nothing to commit."""
        run(["git", "-C", str(workspace), "add", "-A"])
        staged = run(["git", "-C", str(workspace), "diff", "--cached", "--name-only"]).strip()
        if not staged and not self._merge_in_progress(workspace):
            return False
        log_event(
            LOGGER,
            "git_commit",
            workspace=str(workspace),
            staged_count=len(staged.splitlines()),
        )
        run(["git", "-C", str(workspace), "commit", "--no-verify", "-m", message])
        return True

    def push_head(self, workspace: Path, branch: str) -> None:
        remote_url = self.repo.effective_remote_url
        log_event(LOGGER, "git_push", workspace=str(workspace), branch=branch)
        try:
            self._with_network_retry(
                ["git", "-C", str(workspace), "push", remote_url, f"HEAD:refs/heads/{branch}"],
                operation=f"git push {branch}",
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                workspace=str(workspace),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def head_sha(self, workspace: Path) -> str:
        return run(["git", "-C", str(workspace), "rev-parse", "HEAD"]).strip()

    def _merge_in_progress(self, workspace: Path) -> bool:
        try:
            run(["git", "-C", str(workspace), "rev-parse", "-q", "--verify", "MERGE_HEAD"])
        except CommandError:
            return False
        return True

    def _with_network_retry(self, cmd: list[str], *, operation: str) -> None:
        with_backoff(
            lambda: run(cmd),
            is_transient=is_transient_git_error,
            policy=self.retry_policy,
            operation=operation,
            sleep=self._sleep,
        )

    def _ensure_mirror(self) -> None:
        remote_url = self.repo.effective_remote_url
        source = self.repo.local_clone_source or remote_url
        if not self.layout.mirror_path.exists():
            log_event(LOGGER, "git_mirror_cloned", mirror_path=str(self.layout.mirror_path))
            run(["git", "clone", "--mirror", source, str(self.layout.mirror_path)])

        run(
            [
                "git",
                f"--git-dir={self.layout.mirror_path}",
                "remote",
                "set-url",
                "origin",
                remote_url,
            ]
        )
        log_event(LOGGER, "git_mirror_synced", mirror_path=str(self.layout.mirror_path))
        self._with_network_retry(
            ["git", f"--git-dir={self.layout.mirror_path}", "fetch", "origin", "--prune"],
            operation="git fetch --prune",
        )


def parse_porcelain_status(output: str) -> tuple[str, ...]:
    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if path and path not in paths:
            paths.append(path)
    return tuple(paths)
