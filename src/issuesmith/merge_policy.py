from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from fnmatch import fnmatchcase
import logging
import threading
import time
from typing import Literal

from issuesmith.agent_adapter import AgentAdapter
from issuesmith.cancellation import TaskCancelledError
from issuesmith.config import ConflictRule, RepoConfig
from issuesmith.git_ops import GitRepoManager
from issuesmith.github_gateway import GitHubApiError, GitHubGateway
from issuesmith.models import (
    AutoMergeSettings,
    ConflictFileAction,
    MergeabilityState,
    MergeMethod,
    PullRequestAutoMergeOverride,
    PullRequestSnapshot,
)
from issuesmith.observability import log_event, log_warning
from issuesmith.prompts import (
    auto_merge_comment,
    build_conflict_prompt,
    escalation_comment,
    resolution_failed_comment,
    resolved_comment,
)
from issuesmith.scheduler import RunningTask, TaskScheduler
from issuesmith.shell import CommandError
from issuesmith.state import StateStore
from issuesmith.workspace import WorkspaceError, WorkspaceManager


LOGGER = logging.getLogger("issuesmith.merge_policy")

PullRequestOutcome = Literal[
    "auto_merge_enabled",
    "merged_directly",
    "merge_failed",
    "skipped_fresh",
    "already_escalated",
    "escalated",
    "resolved",
    "merged_base_cleanly",
    "ignored_only",
    "resolution_failed",
    "no_action",
]

_SECONDS_PER_DAY = 86_400.0


class ConflictResolutionError(RuntimeError):
    pass


@dataclass(frozen=True)
class EffectiveAutoMerge:
    settings: AutoMergeSettings
    overridden: bool


def mergeability_state(pr: PullRequestSnapshot) -> MergeabilityState:
    """Read mergeability from the platform fields only; never simulated locally."""
    if pr.mergeable_state == "dirty" or pr.mergeable is False:
        return "dirty"
    if pr.mergeable is True:
        return "clean"
    return "unknown"


def effective_auto_merge(
    repo_settings: AutoMergeSettings,
    pr_override: PullRequestAutoMergeOverride | None,
) -> EffectiveAutoMerge:
    if pr_override is None:
        return EffectiveAutoMerge(settings=repo_settings, overridden=False)
    # A pull-request override governs both enablement and clean auto-merge.
    return EffectiveAutoMerge(
        settings=replace(
            repo_settings,
            enabled=pr_override.enabled,
            auto_merge_clean=pr_override.enabled,
            merge_method=pr_override.merge_method or repo_settings.merge_method,
        ),
        overridden=True,
    )


def classify_conflicted_file(path: str, rules: tuple[ConflictRule, ...]) -> ConflictFileAction:
    """First matching rule wins. Patterns without a slash also match the basename."""
    basename = path.rsplit("/", 1)[-1]
    for rule in rules:
        if fnmatchcase(path, rule.pattern):
            return rule.action
        if "/" not in rule.pattern and fnmatchcase(basename, rule.pattern):
            return rule.action
    return "resolve"


def pull_request_age_days(pr: PullRequestSnapshot, *, now: float) -> float | None:
    if not pr.updated_at:
        return None
    try:
        updated = datetime.fromisoformat(pr.updated_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    return (now - updated.timestamp()) / _SECONDS_PER_DAY


class ConflictResolutionEngine:
    def __init__(
        self,
        *,
        repo: RepoConfig,
        state: StateStore,
        github: GitHubGateway,
        git: GitRepoManager,
        workspaces: WorkspaceManager,
        agent: AgentAdapter,
        scheduler: TaskScheduler,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._state = state
        self._github = github
        self._git = git
        self._workspaces = workspaces
        self._agent = agent
        self._scheduler = scheduler
        self._clock = clock
        self._monotonic = monotonic
        # (pr_number, head_sha) pairs that already had auto-merge enabled.
        self._auto_merge_requested: set[tuple[int, str]] = set()
        self._auto_merge_lock = threading.Lock()

    def settings_for(self, pr_number: int) -> EffectiveAutoMerge:
        repo_settings = (
            self._state.get_repo_auto_merge(self._repo.full_name) or self._repo.auto_merge
        )
        override = self._state.get_pr_auto_merge(
            repo_full_name=self._repo.full_name, pr_number=pr_number
        )
        return effective_auto_merge(repo_settings, override)

    def evaluate(self, pr_number: int, task: RunningTask) -> PullRequestOutcome:
        pr = self._github.get_pull_request(pr_number)
        outcome = self._evaluate(pr, task)
        log_event(
            LOGGER,
            "pull_request_evaluated",
            repo_full_name=self._repo.full_name,
            pr_number=pr.number,
            mergeability=mergeability_state(pr),
            outcome=outcome,
        )
        return outcome

    def _evaluate(self, pr: PullRequestSnapshot, task: RunningTask) -> PullRequestOutcome:
        if pr.state != "open" or pr.merged or pr.draft:
            return "no_action"
        effective = self.settings_for(pr.number)
        settings = effective.settings
        if not settings.enabled:
            return "no_action"

        state = mergeability_state(pr)
        if state == "clean":
            if not settings.auto_merge_clean:
                return "no_action"
            return self._auto_merge(pr, settings.merge_method)
        if state != "dirty" or not settings.auto_resolve_conflicts:
            return "no_action"

        if self._state.has_escalated(repo_full_name=self._repo.full_name, pr_number=pr.number):
            return "already_escalated"
        failed = self._state.count_failed_conflict_attempts(
            repo_full_name=self._repo.full_name, pr_number=pr.number
        )
        if failed >= settings.max_resolution_attempts:
            return self._escalate_ceiling(pr, failed)
        age_days = pull_request_age_days(pr, now=self._clock())
        if age_days is not None and age_days < settings.stale_pr_days:
            log_event(
                LOGGER,
                "conflict_skipped_fresh",
                pr_number=pr.number,
                age_days=round(age_days, 2),
                stale_pr_days=settings.stale_pr_days,
            )
            return "skipped_fresh"
        return self._resolve(pr, settings, task, failed_before=failed)

    def _auto_merge(self, pr: PullRequestSnapshot, method: MergeMethod) -> PullRequestOutcome:
        marker = (pr.number, pr.head_sha)
        with self._auto_merge_lock:
            if marker in self._auto_merge_requested:
                return "no_action"
        try:
            result = self._github.enable_auto_merge(pr, method)
            if result.success:
                with self._auto_merge_lock:
                    self._auto_merge_requested.add(marker)
                self._comment(pr.number, auto_merge_comment(method=method, direct=False))
                return "auto_merge_enabled"
            log_warning(
                LOGGER,
                "auto_merge_enable_failed",
                pr_number=pr.number,
                unavailable=result.unavailable,
                message=result.message,
            )
            if not result.unavailable:
                return "merge_failed"
            merged = self._github.merge_pull_request(
                pr.number,
                method,
                commit_title=f"{pr.title} (#{pr.number})",
                commit_message="Merged automatically once the pull request became mergeable.",
            )
        except (GitHubApiError, CommandError) as exc:
            log_warning(
                LOGGER,
                "auto_merge_error",
                pr_number=pr.number,
                error_type=type(exc).__name__,
            )
            return "merge_failed"
        if not merged.success:
            log_warning(LOGGER, "direct_merge_failed", pr_number=pr.number, message=merged.message)
            return "merge_failed"
        self._comment(pr.number, auto_merge_comment(method=method, direct=True))
        return "merged_directly"

    def _escalate_ceiling(self, pr: PullRequestSnapshot, failed: int) -> PullRequestOutcome:
        reason = (
            f"Automatic conflict resolution failed {failed} times; "
            "this pull request needs manual intervention."
        )
        attempt_id = self._state.create_conflict_attempt(
            repo_full_name=self._repo.full_name,
            pr_number=pr.number,
            pr_title=pr.title,
            conflicted_files=(),
        )
        self._state.finish_conflict_attempt(attempt_id, outcome="escalated", reason=reason)
        log_warning(LOGGER, "conflict_escalated", pr_number=pr.number, failed_attempts=failed)
        self._comment(pr.number, escalation_comment(files=(), reason=reason))
        return "escalated"

    def _resolve(
        self,
        pr: PullRequestSnapshot,
        settings: AutoMergeSettings,
        task: RunningTask,
        *,
        failed_before: int,
    ) -> PullRequestOutcome:
        started = self._monotonic()
        attempt_id: int | None = None
        resolved_files: tuple[str, ...] = ()
        pushed_sha = ""
        try:
            task.token.checkpoint("before_workspace")
            path = self._workspaces.acquire(pr.head_ref, purpose="conflict")
            task.attach_workspace(path, self._workspaces.discard)
            self._workspaces.fetch_branch(pr.base_ref)
            if self._git.merge_branch(path, pr.base_ref):
                task.token.checkpoint("before_push")
                self._git.commit_all(path, f"Merge {pr.base_ref} into {pr.head_ref}")
                self._workspaces.push(path, pr.head_ref)
                attempt_id = self._state.create_conflict_attempt(
                    repo_full_name=self._repo.full_name,
                    pr_number=pr.number,
                    pr_title=pr.title,
                    conflicted_files=(),
                )
                self._finish(attempt_id, started, outcome="success", reason="Base merged cleanly")
                return "merged_base_cleanly"

            conflicted = self._git.conflicted_files(path)
            if not conflicted:
                raise ConflictResolutionError(
                    f"Merging {pr.base_ref} failed without leaving conflicted files"
                )
            attempt_id = self._state.create_conflict_attempt(
                repo_full_name=self._repo.full_name,
                pr_number=pr.number,
                pr_title=pr.title,
                conflicted_files=conflicted,
            )
            actions = {
                item: classify_conflicted_file(item, self._repo.conflict_rules)
                for item in conflicted
            }
            to_escalate = tuple(item for item in conflicted if actions[item] == "escalate")
            to_resolve = tuple(item for item in conflicted if actions[item] == "resolve")
            to_ignore = tuple(item for item in conflicted if actions[item] == "ignore")
            if to_escalate:
                reason = "Conflicts touch protected paths: " + ", ".join(to_escalate)
                self._finish(
                    attempt_id,
                    started,
                    outcome="escalated",
                    escalated_files=to_escalate,
                    reason=reason,
                )
                attempt_id = None
                log_warning(LOGGER, "conflict_escalated", pr_number=pr.number, files=to_escalate)
                self._comment(pr.number, escalation_comment(files=to_escalate, reason=reason))
                return "escalated"
            if not to_resolve:
                self._finish(
                    attempt_id,
                    started,
                    outcome="success",
                    reason="All conflicted files are ignored by rule",
                )
                return "ignored_only"

            self._git.keep_current_side(path, to_ignore)
            task.token.checkpoint("before_agent")
            prompt = build_conflict_prompt(
                repo_full_name=self._repo.full_name,
                pr_number=pr.number,
                pr_title=pr.title,
                base_ref=pr.base_ref,
                files_to_resolve=to_resolve,
                coding_guidelines=self._repo.coding_guidelines,
                rules=self._state.list_rules(self._repo.full_name),
            )
            with self._scheduler.agent_slot(task):
                result = self._agent.run_task(
                    cwd=path, prompt=prompt, model_hint=None, cancel=task.token
                )
            task.token.checkpoint("after_agent")
            if not result.success:
                raise ConflictResolutionError(result.summary or "Agent could not resolve conflicts")
            self._git.stage_files(path, to_resolve)
            unresolved = dict.fromkeys(
                self._git.conflicted_files(path, to_resolve)
                + self._git.files_with_conflict_markers(path, to_resolve)
            )
            if unresolved:
                raise ConflictResolutionError(
                    "Conflicts remain after agent run: " + ", ".join(unresolved)
                )
            resolved_files = to_resolve

            task.token.checkpoint("before_push")
            self._git.commit_all(path, f"Resolve merge conflicts with {pr.base_ref}")
            self._workspaces.push(path, pr.head_ref)
            pushed_sha = self._git.head_sha(path)
            self._finish(attempt_id, started, outcome="success", resolved_files=resolved_files)
            attempt_id = None
        except TaskCancelledError as exc:
            if attempt_id is not None:
                self._finish(
                    attempt_id,
                    started,
                    outcome="failed",
                    reason=f"Cancelled at {exc.checkpoint}",
                )
            raise
        except (ConflictResolutionError, CommandError, WorkspaceError, GitHubApiError) as exc:
            error = str(exc)
            if attempt_id is None:
                attempt_id = self._state.create_conflict_attempt(
                    repo_full_name=self._repo.full_name,
                    pr_number=pr.number,
                    pr_title=pr.title,
                    conflicted_files=(),
                )
            self._finish(attempt_id, started, outcome="failed", reason=error)
            remaining_attempts = max(0, settings.max_resolution_attempts - failed_before - 1)
            log_warning(
                LOGGER,
                "conflict_resolution_failed",
                pr_number=pr.number,
                error_type=type(exc).__name__,
                remaining_attempts=remaining_attempts,
            )
            self._comment(
                pr.number,
                resolution_failed_comment(error=error, remaining_attempts=remaining_attempts),
            )
            return "resolution_failed"
        finally:
            workspace = task.workspace
            if workspace is not None:
                self._workspaces.release(workspace)

        self._comment(pr.number, resolved_comment(files=resolved_files))
        if settings.enabled and settings.auto_merge_clean:
            refreshed = replace(pr, head_sha=pushed_sha)
            self._auto_merge(refreshed, settings.merge_method)
        return "resolved"

    def _finish(
        self,
        attempt_id: int,
        started: float,
        *,
        outcome: Literal["success", "failed", "escalated"],
        resolved_files: tuple[str, ...] = (),
        escalated_files: tuple[str, ...] = (),
        reason: str | None = None,
    ) -> None:
        duration_ms = int((self._monotonic() - started) * 1000)
        self._state.finish_conflict_attempt(
            attempt_id,
            outcome=outcome,
            resolved_files=resolved_files,
            escalated_files=escalated_files,
            reason=reason,
            duration_ms=duration_ms,
        )
        log_event(
            LOGGER,
            "conflict_attempt_finished",
            repo_full_name=self._repo.full_name,
            attempt_id=attempt_id,
            outcome=outcome,
            duration_ms=duration_ms,
        )

    def _comment(self, pr_number: int, body: str) -> None:
        try:
            self._github.post_issue_comment(pr_number, body)
        except (GitHubApiError, CommandError) as exc:
            log_warning(
                LOGGER,
                "pull_request_comment_failed",
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )

