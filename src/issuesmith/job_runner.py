from __future__ import annotations

from dataclasses import dataclass
import logging

from issuesmith.agent_adapter import AgentAdapter, AgentFailedError, extract_clarification
from issuesmith.branch_association import (
    BRANCH_PREFIX,
    BranchAssociationResolver,
    issue_branch_name,
)
from issuesmith.cancellation import TaskCancelledError
from issuesmith.config import RepoConfig
from issuesmith.git_ops import GitRepoManager
from issuesmith.github_gateway import GitHubApiError, GitHubGateway
from issuesmith.models import (
    ActionableComment,
    ActiveBranch,
    AssociationDecision,
    Issue,
    IssueComment,
    JobRecord,
    JobStatus,
    PullRequest,
    WorkResult,
)
from issuesmith.observability import log_event, log_warning
from issuesmith.prompts import (
    build_issue_prompt,
    cancelled_comment,
    clarification_comment,
    commit_message,
    failure_comment,
    finished_comment,
    no_changes_comment,
    pull_request_body,
    pull_request_title,
    started_comment,
)
from issuesmith.scheduler import RunningTask, TaskScheduler
from issuesmith.shell import CommandError
from issuesmith.state import InvalidTransitionError, StateStore
from issuesmith.workspace import WorkspaceManager


LOGGER = logging.getLogger("issuesmith.job_runner")

STATUS_LABEL_SUFFIXES: tuple[JobStatus, ...] = (
    "in-progress",
    "waiting",
    "done",
    "cancelled",
    "failed",
)
MODEL_LABEL_PREFIX = "model:"


class JoinedPullRequestClosedError(RuntimeError):
    """The pull request of a joined branch closed while the task still referenced it."""


@dataclass(frozen=True)
class BranchPlan:
    branch: str
    joining: bool
    reason: str
    pr_number: int | None = None


def status_label(prefix: str, status: JobStatus) -> str:
    return f"{prefix}:{status}"


def model_hint_from_labels(labels: tuple[str, ...]) -> str | None:
    for label in labels:
        if label.lower().startswith(MODEL_LABEL_PREFIX):
            model = label[len(MODEL_LABEL_PREFIX) :].strip()
            if model:
                return model
    return None


def conversation_comments(
    github: GitHubGateway, issue_number: int, pr_number: int | None
) -> tuple[IssueComment, ...]:
    """Issue comments followed by unseen comments from the pull request conversation."""
    comments = tuple(github.list_issue_comments(issue_number))
    if pr_number is None or pr_number == issue_number:
        return comments
    seen = {comment.comment_id for comment in comments}
    return comments + tuple(
        comment
        for comment in github.list_issue_comments(pr_number)
        if comment.comment_id not in seen
    )


class IssueJobRunner:
    """Runs one claimed job to a terminal or waiting state.

    The job is already in-progress when run() starts. Every exit path moves it
    out of in-progress: done, waiting, failed, or cancelled.
    """

    def __init__(
        self,
        *,
        repo: RepoConfig,
        label_prefix: str,
        state: StateStore,
        github: GitHubGateway,
        git: GitRepoManager,
        workspaces: WorkspaceManager,
        agent: AgentAdapter,
        scheduler: TaskScheduler,
        resolver: BranchAssociationResolver,
    ) -> None:
        self._repo = repo
        self._label_prefix = label_prefix
        self._state = state
        self._github = github
        self._git = git
        self._workspaces = workspaces
        self._agent = agent
        self._scheduler = scheduler
        self._resolver = resolver

    def run(self, task: RunningTask, issue: Issue) -> WorkResult | None:
        if task.job_id is None:
            raise ValueError("IssueJobRunner requires a job task")
        job = self._state.require_job(task.job_id)
        log_event(
            LOGGER,
            "job_started",
            job_id=job.job_id,
            repo_full_name=self._repo.full_name,
            issue_number=issue.number,
        )
        self._set_status_label(issue.number, "in-progress")
        try:
            return self._execute(task, job, issue)
        except TaskCancelledError as exc:
            self._finish_cancelled(job, issue, exc)
            return None
        except Exception as exc:  # noqa: BLE001
            self._finish_failed(job, issue, exc)
            return None
        finally:
            workspace = task.workspace
            if workspace is not None:
                self._workspaces.release(workspace)

    def _execute(self, task: RunningTask, job: JobRecord, issue: Issue) -> WorkResult | None:
        comments = conversation_comments(self._github, issue.number, job.pr_number)
        follow_ups = self._follow_ups(issue.number, comments)
        plan = self._plan_branch(job, issue)
        self._state.set_job_branch(job.job_id, plan.branch)
        self._comment(
            issue.number,
            started_comment(
                branch=plan.branch,
                joining_branch=plan.joining,
                resumed=job.branch is not None,
                reason=plan.reason,
            ),
        )

        task.token.checkpoint("before_workspace")
        workspace = self._workspaces.acquire(plan.branch, purpose="issue")
        task.attach_workspace(workspace, self._workspaces.discard)

        task.token.checkpoint("before_agent")
        prompt = build_issue_prompt(
            issue=issue,
            repo_full_name=self._repo.full_name,
            branch=plan.branch,
            joining_branch=plan.joining,
            comments=comments,
            follow_ups=follow_ups,
            coding_guidelines=self._repo.coding_guidelines,
            rules=self._state.list_rules(self._repo.full_name),
        )
        with self._scheduler.agent_slot(task):
            result = self._agent.run_task(
                cwd=workspace,
                prompt=prompt,
                model_hint=model_hint_from_labels(issue.labels),
                cancel=task.token,
            )
        self._state.touch_job(job.job_id)
        task.token.checkpoint("after_agent")
        consumed_ids = tuple(item.comment_id for item in follow_ups)

        question = extract_clarification(result.summary)
        if question is not None and not result.has_changes:
            self._comment(issue.number, clarification_comment(question))
            self._transition(job.job_id, "waiting", issue_number=issue.number)
            self._consume(consumed_ids)
            log_event(LOGGER, "job_waiting_for_clarification", job_id=job.job_id)
            return None

        if not result.has_changes:
            if not result.success:
                raise AgentFailedError(result.summary or "Agent failed without making changes")
            return self._finish_without_changes(job, issue, result.summary, consumed_ids)

        task.token.checkpoint("before_push")
        if not self._git.commit_all(workspace, commit_message(issue, result.summary)):
            return self._finish_without_changes(job, issue, result.summary, consumed_ids)
        self._workspaces.push(workspace, plan.branch)

        pr, updated_existing = self._ensure_pull_request(
            issue, plan, result.summary, result.files_changed
        )
        self._state.transition_job(
            job.job_id,
            "done",
            branch=plan.branch,
            pr_number=pr.number,
            pr_url=pr.html_url,
        )
        self._set_status_label(issue.number, "done")
        self._consume(consumed_ids)
        self._comment(
            issue.number,
            finished_comment(
                pr_url=pr.html_url,
                files_changed=result.files_changed,
                summary=result.summary,
                updated_existing=updated_existing,
            ),
        )
        log_event(
            LOGGER,
            "job_finished",
            job_id=job.job_id,
            issue_number=issue.number,
            status="done",
            pr_number=pr.number,
            branch=plan.branch,
        )
        return WorkResult(
            issue_number=issue.number,
            branch=plan.branch,
            pr_number=pr.number,
            pr_url=pr.html_url,
        )

    def _plan_branch(self, job: JobRecord, issue: Issue) -> BranchPlan:
        if job.force_new_branch:
            branch = issue_branch_name(issue.number, issue.title)
            self._github.create_branch(branch, from_branch=self._repo.default_branch)
            self._state.set_force_new_branch(job.job_id, False)
            return BranchPlan(branch=branch, joining=False, reason="A new branch was requested.")

        if job.branch is not None:
            own = self._github.find_pull_request_by_head(head=job.branch, state="open")
            if own is not None:
                return BranchPlan(
                    branch=job.branch,
                    joining=True,
                    reason=f"Continuing the open pull request #{own.number}.",
                    pr_number=own.number,
                )

        decision = self._resolver.resolve(issue, self._active_branches())
        if decision.action == "JOIN" and decision.branch is not None:
            joined = self._joined_pr_number(decision)
            return BranchPlan(
                branch=decision.branch,
                joining=True,
                reason=decision.reason,
                pr_number=joined,
            )
        branch = issue_branch_name(issue.number, issue.title)
        self._github.create_branch(branch, from_branch=self._repo.default_branch)
        return BranchPlan(branch=branch, joining=False, reason=decision.reason)

    def _active_branches(self) -> tuple[ActiveBranch, ...]:
        pulls = self._github.list_open_pull_requests()
        return tuple(
            ActiveBranch(
                branch=pull.head_ref,
                pr_number=pull.number,
                pr_title=pull.title,
                pr_body=pull.body,
            )
            for pull in sorted(pulls, key=lambda item: item.number)
            if pull.head_ref.startswith(BRANCH_PREFIX)
        )

    def _joined_pr_number(self, decision: AssociationDecision) -> int | None:
        if decision.branch is None:
            return None
        found = self._github.find_pull_request_by_head(head=decision.branch, state="open")
        return None if found is None else found.number

    def _ensure_pull_request(
        self,
        issue: Issue,
        plan: BranchPlan,
        summary: str,
        files_changed: tuple[str, ...],
    ) -> tuple[PullRequest, bool]:
        existing = self._github.find_pull_request_by_head(head=plan.branch, state="open")
        if plan.joining:
            if existing is None:
                raise JoinedPullRequestClosedError(
                    f"Pull request for branch {plan.branch} closed while issue "
                    f"#{issue.number} was being worked on"
                )
            return existing, True
        if existing is not None:
            return existing, True
        created = self._github.create_pull_request(
            title=pull_request_title(issue),
            head=plan.branch,
            base=self._repo.default_branch,
            body=pull_request_body(issue, summary=summary, files_changed=files_changed),
        )
        return created, False

    def _finish_without_changes(
        self,
        job: JobRecord,
        issue: Issue,
        summary: str,
        consumed_ids: tuple[int, ...],
    ) -> None:
        self._transition(job.job_id, "done", issue_number=issue.number)
        self._consume(consumed_ids)
        self._comment(issue.number, no_changes_comment(summary))
        log_event(
            LOGGER,
            "job_finished",
            job_id=job.job_id,
            issue_number=issue.number,
            status="done",
            changes=False,
        )
        return None

    def _finish_cancelled(self, job: JobRecord, issue: Issue, exc: TaskCancelledError) -> None:
        # Changes made before the cancellation are never pushed.
        self._transition(job.job_id, "cancelled", issue_number=issue.number)
        self._comment(issue.number, cancelled_comment())
        log_event(
            LOGGER,
            "job_cancelled",
            job_id=job.job_id,
            issue_number=issue.number,
            checkpoint=exc.checkpoint,
            forced=exc.forced,
        )

    def _finish_failed(self, job: JobRecord, issue: Issue, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        self._transition(job.job_id, "failed", issue_number=issue.number, error=error)
        self._comment(issue.number, failure_comment(str(exc) or type(exc).__name__))
        log_warning(
            LOGGER,
            "job_failed",
            job_id=job.job_id,
            issue_number=issue.number,
            error_type=type(exc).__name__,
        )

    def _transition(
        self,
        job_id: int,
        status: JobStatus,
        *,
        issue_number: int,
        error: str | None = None,
    ) -> None:
        try:
            self._state.transition_job(job_id, status, error=error)
        except InvalidTransitionError as exc:
            log_warning(
                LOGGER,
                "job_transition_rejected",
                job_id=job_id,
                from_status=exc.from_status,
                to_status=status,
            )
            return
        self._set_status_label(issue_number, status)

    def _follow_ups(
        self, issue_number: int, comments: tuple[IssueComment, ...]
    ) -> tuple[ActionableComment, ...]:
        pending_ids = set(
            self._state.list_unconsumed_actionable_comment_ids(
                repo_full_name=self._repo.full_name, issue_number=issue_number
            )
        )
        if not pending_ids:
            return ()
        ledger = {
            entry.comment_id: entry
            for entry in self._state.list_processed_comments(
                repo_full_name=self._repo.full_name, issue_number=issue_number
            )
        }
        follow_ups: list[ActionableComment] = []
        for comment in comments:
            entry = ledger.get(comment.comment_id)
            if comment.comment_id not in pending_ids or entry is None:
                continue
            if entry.outcome not in ("fix", "feedback", "clarification"):
                continue
            follow_ups.append(
                ActionableComment(
                    comment_id=comment.comment_id,
                    action_type=entry.outcome,
                    confidence=entry.confidence,
                    extracted_request=comment.body,
                )
            )
        return tuple(follow_ups)

    def _consume(self, comment_ids: tuple[int, ...]) -> None:
        self._state.mark_comments_consumed(
            repo_full_name=self._repo.full_name, comment_ids=comment_ids
        )

    def _set_status_label(self, issue_number: int, status: JobStatus) -> None:
        target = status_label(self._label_prefix, status)
        try:
            self._github.add_labels(issue_number, (target,))
            for other in STATUS_LABEL_SUFFIXES:
                label = status_label(self._label_prefix, other)
                if label != target:
                    self._github.remove_label(issue_number, label)
        except (GitHubApiError, CommandError) as exc:
            log_warning(
                LOGGER,
                "status_label_update_failed",
                issue_number=issue_number,
                status=status,
                error_type=type(exc).__name__,
            )

    def _comment(self, issue_number: int, body: str) -> None:
        try:
            self._github.post_issue_comment(issue_number, body)
        except (GitHubApiError, CommandError) as exc:
            log_warning(
                LOGGER,
                "issue_comment_failed",
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
