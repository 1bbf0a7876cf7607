from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


JobStatus = Literal["pending", "in-progress", "done", "waiting", "failed", "cancelled"]
ActionType = Literal["fix", "feedback", "clarification", "future_fix", "ignore"]
CommentOutcome = Literal["fix", "feedback", "clarification", "future_fix", "ignore", "duplicate"]
AssociationAction = Literal["CREATE_NEW", "JOIN"]
MergeabilityState = Literal["clean", "dirty", "unknown"]
MergeMethod = Literal["merge", "squash", "rebase"]
ConflictFileAction = Literal["resolve", "ignore", "escalate"]
ConflictAttemptOutcome = Literal["running", "success", "failed", "escalated"]
RuleKind = Literal["do", "dont"]

JOB_STATUSES: tuple[JobStatus, ...] = (
    "pending",
    "in-progress",
    "done",
    "waiting",
    "failed",
    "cancelled",
)
MERGE_METHODS: tuple[MergeMethod, ...] = ("merge", "squash", "rebase")
RULE_KINDS: tuple[RuleKind, ...] = ("do", "dont")


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    author_login: str = ""


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    user_type: str
    html_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    html_url: str
    state: str
    head_ref: str
    base_ref: str
    head_sha: str
    mergeable: bool | None
    mergeable_state: str | None
    draft: bool
    merged: bool
    updated_at: str
    labels: tuple[str, ...] = ()
    node_id: str = ""


@dataclass(frozen=True)
class ActiveBranch:
    branch: str
    pr_number: int
    pr_title: str
    pr_body: str


@dataclass(frozen=True)
class AssociationDecision:
    action: AssociationAction
    branch: str | None
    reason: str


@dataclass(frozen=True)
class ActionableComment:
    comment_id: int
    action_type: ActionType
    confidence: float
    extracted_request: str
    context_comment_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class AutoMergeSettings:
    enabled: bool = True
    auto_merge_clean: bool = True
    auto_resolve_conflicts: bool = True
    merge_method: MergeMethod = "merge"
    stale_pr_days: float = 7.0
    max_resolution_attempts: int = 3


@dataclass(frozen=True)
class PullRequestAutoMergeOverride:
    repo_full_name: str
    pr_number: int
    enabled: bool
    merge_method: MergeMethod | None
    updated_at: str


@dataclass(frozen=True)
class JobRecord:
    job_id: int
    repo_full_name: str
    issue_number: int
    issue_title: str
    status: JobStatus
    branch: str | None
    pr_number: int | None
    pr_url: str | None
    error: str | None
    force_new_branch: bool
    stale_recoveries: int
    claimed_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ConflictAttemptRecord:
    attempt_id: int
    repo_full_name: str
    pr_number: int
    pr_title: str
    conflicted_files: tuple[str, ...]
    outcome: ConflictAttemptOutcome
    resolved_files: tuple[str, ...]
    escalated_files: tuple[str, ...]
    reason: str | None
    duration_ms: int | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class CancelRequestRecord:
    request_id: int
    job_id: int | None
    force: bool
    status: Literal["pending", "applied", "rejected"]
    result: str | None
    created_at: str


@dataclass(frozen=True)
class LearnedRule:
    """An operator-taught do or don't that is added to every agent prompt for one repo."""

    rule_id: int
    repo_full_name: str
    kind: RuleKind
    text: str
    created_at: str


@dataclass(frozen=True)
class WorkResult:
    issue_number: int
    branch: str
    pr_number: int
    pr_url: str
