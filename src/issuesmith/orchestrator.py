from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time

from issuesmith.agent_adapter import AgentAdapter
from issuesmith.branch_association import BRANCH_PREFIX, BranchAssociationResolver
from issuesmith.codex_adapter import CodexAdapter
from issuesmith.comment_classifier import CommentMonitor, CommentScan
from issuesmith.config import AppConfig, RepoConfig
from issuesmith.git_ops import GitRepoManager
from issuesmith.github_gateway import GitHubApiError, GitHubGateway
from issuesmith.job_runner import IssueJobRunner, conversation_comments, status_label
from issuesmith.merge_policy import ConflictResolutionEngine
from issuesmith.models import (
    ActionableComment,
    Issue,
    IssueComment,
    JobRecord,
    PullRequestSnapshot,
)
from issuesmith.observability import log_event, log_warning
from issuesmith.prompts import (
    COMMENT_MARKER,
    future_fix_issue_body,
    future_fix_summary_comment,
)
from issuesmith.scheduler import TaskScheduler
from issuesmith.shell import CommandError
from issuesmith.state import InvalidTransitionError, StateStore
from issuesmith.workspace import WorkspaceManager


LOGGER = logging.getLogger("issuesmith.orchestrator")

FUTURE_FIX_LABEL_SUFFIX = "future-fix"
_MAX_FUTURE_FIX_TITLE = 80


@dataclass(frozen=True)
class RepoRuntime:
    repo: RepoConfig
    github: GitHubGateway
    git: GitRepoManager
    workspaces: WorkspaceManager
    runner: IssueJobRunner
    engine: ConflictResolutionEngine
    monitor: CommentMonitor


def build_repo_runtime(
    config: AppConfig,
    repo: RepoConfig,
    *,
    state: StateStore,
    scheduler: TaskScheduler,
    agent: AgentAdapter | None = None,
) -> RepoRuntime:
    github = GitHubGateway(repo.owner, repo.name)
    git = GitRepoManager(config.runtime, repo)
    workspaces = WorkspaceManager(git)
    repo_agent = agent or CodexAdapter(config.codex_for_repo(repo))
    resolver = BranchAssociationResolver(
        lambda prompt: repo_agent.ask(cwd=config.runtime.base_dir, prompt=prompt)
    )
    runner = IssueJobRunner(
        repo=repo,
        label_prefix=config.runtime.label_prefix,
        state=state,
        github=github,
        git=git,
        workspaces=workspaces,
        agent=repo_agent,
        scheduler=scheduler,
        resolver=resolver,
    )
    engine = ConflictResolutionEngine(
        repo=repo,
        state=state,
        github=github,
        git=git,
        workspaces=workspaces,
        agent=repo_agent,
        scheduler=scheduler,
    )
    monitor = CommentMonitor(state, repo.comments, bot_logins=repo.bot_logins)
    return RepoRuntime(
        repo=repo,
        github=github,
        git=git,
        workspaces=workspaces,
        runner=runner,
        engine=engine,
        monitor=monitor,
    )


class Orchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        state: StateStore,
        scheduler: TaskScheduler,
        repos: tuple[RepoRuntime, ...],
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._state = state
        self._scheduler = scheduler
        self._repos = repos
        self._sleep = sleep
        self._monotonic = monotonic
        self._cycle_lock = threading.Lock()
        self._last_stale_check: float | None = None
        self._stop = threading.Event()

    def run(self, *, once: bool) -> None:
        for runtime in self._repos:
            runtime.workspaces.prepare()
        self.recover_stale_jobs()
        try:
            while not self._stop.is_set():
                self.poll_once()
                if once:
                    self._scheduler.wait_idle()
                    break
                self._stop.wait(self._config.runtime.poll_interval_seconds)
        finally:
            self._scheduler.shutdown(wait=True)

    def stop(self) -> None:
        self._stop.set()

    def poll_once(self) -> bool:
        """Run one poll cycle. Returns False if a previous cycle was still running."""
        if not self._cycle_lock.acquire(blocking=False):
            log_event(LOGGER, "poll_skipped_overlap")
            return False
        try:
            log_event(LOGGER, "poll_started", repo_count=len(self._repos))
            self.apply_cancel_requests()
            if self._stale_check_due():
                self.recover_stale_jobs()
            for runtime in self._repos:
                try:
                    self._poll_repo(runtime)
                except (GitHubApiError, CommandError) as exc:
                    log_warning(
                        LOGGER,
                        "repo_poll_failed",
                        repo_full_name=runtime.repo.full_name,
                        error_type=type(exc).__name__,
                    )
                self._maybe_sweep(runtime)
            log_event(
                LOGGER,
                "poll_completed",
                running_count=self._scheduler.running_count(),
            )
            return True
        finally:
            self._cycle_lock.release()

    def recover_stale_jobs(self) -> None:
        self._last_stale_check = self._monotonic()
        recoveries = self._state.recover_stale_jobs(
            stale_after_seconds=self._config.runtime.stale_job_minutes * 60,
            max_stale_recoveries=self._config.runtime.max_stale_recoveries,
            exclude_job_ids=self._scheduler.live_job_ids(),
        )
        if recoveries:
            log_event(
                LOGGER,
                "stale_jobs_recovered",
                count=len(recoveries),
                job_ids=tuple(item.job.job_id for item in recoveries),
                demoted_to=tuple(item.demoted_to for item in recoveries),
            )

    def apply_cancel_requests(self) -> None:
        for request in self._state.list_pending_cancel_requests():
            if request.job_id is None:
                summary = self._scheduler.cancel_all(force=request.force)
                self._state.finish_cancel_request(
                    request.request_id,
                    applied=summary.cancelled > 0,
                    result=f"cancelled={summary.cancelled} failed={summary.failed}",
                )
                continue
            result = self._scheduler.cancel(request.job_id, force=request.force)
            self._state.finish_cancel_request(
                request.request_id, applied=result.success, result=result.message
            )

    def _poll_repo(self, runtime: RepoRuntime) -> None:
        repo = runtime.repo
        pulls = tuple(
            pull
            for pull in runtime.github.list_open_pull_requests()
            if pull.head_ref.startswith(BRANCH_PREFIX) or repo.issue_label in pull.labels
        )
        owned_pulls = self._owned_pull_requests(repo, pulls)
        listed_at = self._state.current_timestamp()
        issues = runtime.github.list_open_issues_with_label(repo.issue_label)
        live = self._scheduler.live_job_ids()
        for issue in issues:
            job = self._state.upsert_job(
                repo_full_name=repo.full_name,
                issue_number=issue.number,
                issue_title=issue.title,
            )
            if job.job_id in live or job.status in ("in-progress", "cancelled"):
                continue
            comments = conversation_comments(
                runtime.github, issue.number, owned_pulls.get(job.job_id)
            )
            scan = runtime.monitor.scan(
                repo_full_name=repo.full_name,
                issue_number=issue.number,
                comments=comments,
            )
            if scan.future_fixes:
                self._file_future_fixes(runtime, issue, scan.future_fixes)
            if not self._ready_to_run(runtime, job, issue, comments, scan, listed_at=listed_at):
                continue
            refreshed = self._state.require_job(job.job_id)
            self._scheduler.submit_job(
                refreshed,
                lambda task, runner=runtime.runner, issue=issue: runner.run(task, issue),
            )

        for pull in pulls:
            self._scheduler.submit_pull_request(
                repo.full_name,
                pull.number,
                lambda task, engine=runtime.engine, number=pull.number: engine.evaluate(
                    number, task
                ),
            )

    def _owned_pull_requests(
        self, repo: RepoConfig, pulls: tuple[PullRequestSnapshot, ...]
    ) -> dict[int, int]:
        """Map job id -> number of the managed pull request on the branch that job owns."""
        owned: dict[int, int] = {}
        for pull in pulls:
            owner = self._state.find_branch_owner(
                repo_full_name=repo.full_name, branch=pull.head_ref
            )
            if owner is not None:
                owned[owner.job_id] = pull.number
        return owned

    def _ready_to_run(
        self,
        runtime: RepoRuntime,
        job: JobRecord,
        issue: Issue,
        comments: tuple[IssueComment, ...],
        scan: CommentScan,
        *,
        listed_at: str,
    ) -> bool:
        if job.status == "pending":
            return True
        if job.status == "waiting":
            return bool(scan.actionable) or _has_human_reply(runtime.repo, comments, job.updated_at)
        done_label = status_label(self._config.runtime.label_prefix, "done")
        # Labels in the listing are only trustworthy for jobs that settled before it was taken.
        reopened = (
            job.status == "done" and done_label not in issue.labels and job.updated_at < listed_at
        )
        replied = job.status == "failed" and _has_human_reply(
            runtime.repo, comments, job.updated_at
        )
        if not scan.actionable and not reopened and not replied:
            return False
        try:
            self._state.transition_job(job.job_id, "pending")
        except InvalidTransitionError:
            return False
        if scan.actionable:
            reason = "actionable_comment"
        elif reopened:
            reason = "label_removed"
        else:
            reason = "human_reply"
        log_event(
            LOGGER,
            "job_reactivated",
            job_id=job.job_id,
            issue_number=issue.number,
            from_status=job.status,
            reason=reason,
            comment_count=len(scan.actionable),
        )
        return True

    def _file_future_fixes(
        self,
        runtime: RepoRuntime,
        issue: Issue,
        future_fixes: tuple[ActionableComment, ...],
    ) -> None:
        if not runtime.repo.comments.create_future_fix_issues:
            return
        label = f"{self._config.runtime.label_prefix}:{FUTURE_FIX_LABEL_SUFFIX}"
        created: list[tuple[int, str]] = []
        for item in future_fixes:
            title = _future_fix_title(issue.number, item.extracted_request)
            try:
                follow_up = runtime.github.create_issue(
                    title,
                    future_fix_issue_body(
                        source_number=issue.number,
                        source_url=issue.html_url,
                        request=item.extracted_request,
                    ),
                    (label,),
                )
            except (GitHubApiError, CommandError) as exc:
                log_warning(
                    LOGGER,
                    "future_fix_issue_failed",
                    issue_number=issue.number,
                    comment_id=item.comment_id,
                    error_type=type(exc).__name__,
                )
                continue
            created.append((follow_up.number, title))
        if not created:
            return
        try:
            runtime.github.post_issue_comment(
                issue.number, future_fix_summary_comment(tuple(created))
            )
        except (GitHubApiError, CommandError) as exc:
            log_warning(
                LOGGER,
                "future_fix_summary_failed",
                issue_number=issue.number,
                error_type=type(exc).__name__,
            )

    def _stale_check_due(self) -> bool:
        if self._last_stale_check is None:
            return True
        window = self._config.runtime.stale_job_minutes * 60
        return self._monotonic() - self._last_stale_check >= window

    def _maybe_sweep(self, runtime: RepoRuntime) -> None:
        interval = self._config.runtime.workspace_sweep_interval_minutes * 60
        if not runtime.workspaces.sweep_due(interval):
            return
        runtime.workspaces.sweep(max_age_hours=self._config.runtime.workspace_max_age_hours)


def _has_human_reply(repo: RepoConfig, comments: tuple[IssueComment, ...], since: str) -> bool:
    if not comments:
        return False
    latest = max(comments, key=lambda item: (item.created_at, item.comment_id))
    if COMMENT_MARKER in latest.body or latest.user_type == "Bot" or repo.is_bot(latest.user_login):
        return False
    return latest.created_at > since


def _future_fix_title(source_number: int, request: str) -> str:
    first_line = next((line.strip() for line in request.splitlines() if line.strip()), "")
    first_line = first_line.strip("`").strip()
    if len(first_line) > _MAX_FUTURE_FIX_TITLE:
        first_line = f"{first_line[: _MAX_FUTURE_FIX_TITLE - 3]}..."
    return f"Follow-up from #{source_number}: {first_line or 'deferred work'}"
