from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import json
import logging
import time
from typing import Literal, cast
from urllib.parse import quote, urlencode

from issuesmith.models import (
    Issue,
    IssueComment,
    MergeMethod,
    PullRequest,
    PullRequestSnapshot,
)
from issuesmith.observability import log_event
from issuesmith.retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_backoff
from issuesmith.shell import run


LOGGER = logging.getLogger("issuesmith.github_gateway")

_AUTO_MERGE_UNAVAILABLE_MARKERS = (
    "not enabled for this repository",
    "auto merge is not allowed",
    "pull request is in clean status",
)

_ENABLE_AUTO_MERGE_MUTATION = """
mutation($pullRequestId: ID!, $mergeMethod: PullRequestMergeMethod!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $pullRequestId, mergeMethod: $mergeMethod}) {
    pullRequest { number autoMergeRequest { enabledAt } }
  }
}
""".strip()


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status: int | None) -> None:
        super().__init__(message)
        self.status = status


class GitHubPollingError(GitHubApiError):
    """Recoverable GitHub read failure; caller should retry next poll."""


def is_transient_github_error(exc: BaseException) -> bool:
    if not isinstance(exc, GitHubApiError):
        return False
    # No status means gh never got an HTTP response (network hiccup).
    if exc.status is None:
        return True
    return exc.status >= 500 or exc.status == 429


@dataclass(frozen=True)
class MergeAttemptResult:
    success: bool
    message: str
    unavailable: bool = False


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)
    # path -> (etag, payload)
    _get_cache: dict[str, tuple[str, object]] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_issues_with_label(self, label: str) -> list[Issue]:
        query = urlencode({"state": "open", "labels": label, "per_page": "100"})
        payload = self._get_json(f"/repos/{self.owner}/{self.name}/issues?{query}")
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list", status=200)

        issues: list[Issue] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            # GitHub returns pull requests in the issues endpoint; ignore those.
            if item_obj is None or "pull_request" in item_obj:
                continue
            issues.append(_parse_issue(item_obj))
        log_event(LOGGER, "github_read", endpoint="issues", label=label, count=len(issues))
        return issues

    def list_open_pull_requests(self, *, label: str | None = None) -> list[PullRequestSnapshot]:
        query = urlencode({"state": "open", "per_page": "100"})
        payload = self._get_json(f"/repos/{self.owner}/{self.name}/pulls?{query}")
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list", status=200)
        pulls: list[PullRequestSnapshot] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            snapshot = _parse_pull_request(item_obj)
            if label is not None and label not in snapshot.labels:
                continue
            pulls.append(snapshot)
        log_event(LOGGER, "github_read", endpoint="pulls", label=label, count=len(pulls))
        return pulls

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        payload_obj = _as_object_dict(
            self._get_json(f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        )
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected pull", status=200)
        snapshot = _parse_pull_request(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable=snapshot.mergeable,
            mergeable_state=snapshot.mergeable_state,
        )
        return snapshot

    def find_pull_request_by_head(
        self,
        *,
        head: str,
        state: Literal["open", "all"] = "open",
    ) -> PullRequest | None:
        if state not in {"open", "all"}:
            raise ValueError("state must be 'open' or 'all'")
        query = urlencode({"state": state, "head": f"{self.owner}:{head}", "per_page": "100"})
        payload = self._get_json(f"/repos/{self.owner}/{self.name}/pulls?{query}")
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list", status=200)

        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            candidates.append(
                PullRequest(
                    number=_as_int(item_obj.get("number"), field="number"),
                    html_url=_as_string(item_obj.get("html_url")),
                )
            )
        selected = max(candidates, key=lambda pr: pr.number) if candidates else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            state=state,
            found=selected is not None,
        )
        return selected

    def create_branch(self, branch: str, *, from_branch: str) -> bool:
        """Create refs/heads/<branch> at the tip of from_branch. False if it already exists."""
        ref_obj = _as_object_dict(
            self._get_json(
                f"/repos/{self.owner}/{self.name}/git/ref/heads/{quote(from_branch, safe='/')}"
            )
        )
        object_obj = _as_object_dict(ref_obj.get("object")) if ref_obj else None
        if object_obj is None:
            raise GitHubApiError(f"Unexpected ref payload for {from_branch}", status=200)
        sha = _as_string(object_obj.get("sha"))
        try:
            self._write_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/git/refs",
                {"ref": f"refs/heads/{branch}", "sha": sha},
            )
        except GitHubApiError as exc:
            if exc.status == 422:
                log_event(LOGGER, "github_branch_exists", branch=branch)
                return False
            raise
        log_event(LOGGER, "github_branch_created", branch=branch, from_branch=from_branch)
        return True

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        try:
            payload_obj = _as_object_dict(
                self._write_json(
                    "POST",
                    f"/repos/{self.owner}/{self.name}/pulls",
                    {"title": title, "head": head, "base": base, "body": body},
                )
            )
            if payload_obj is None:
                raise GitHubApiError("Unexpected GitHub response: expected PR", status=200)
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def create_issue(self, title: str, body: str, labels: tuple[str, ...] = ()) -> PullRequest:
        payload_obj = _as_object_dict(
            self._write_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/issues",
                {"title": title, "body": body, "labels": list(labels)},
            )
        )
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected issue", status=200)
        created = PullRequest(
            number=_as_int(payload_obj.get("number"), field="number"),
            html_url=_as_string(payload_obj.get("html_url")),
        )
        log_event(LOGGER, "github_issue_created", issue_number=created.number)
        return created

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        self._write_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels",
            {"labels": list(labels)},
        )
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=labels)

    def remove_label(self, issue_number: int, label: str) -> None:
        try:
            self._write_json(
                "DELETE",
                f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/"
                f"{quote(label, safe='')}",
            )
        except GitHubApiError as exc:
            if exc.status == 404:
                return
            raise
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        try:
            self._write_json(
                "POST",
                f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments",
                {"body": body},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        page = 1
        while True:
            query = urlencode({"per_page": 100, "page": page})
            payload = self._get_json(
                f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?{query}"
            )
            if not isinstance(payload, list):
                raise GitHubPollingError("Unexpected GitHub response: expected list", status=200)
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user")) or {}
                comments.append(
                    IssueComment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        body=_as_string(item_obj.get("body")),
                        user_login=_as_login(user_obj.get("login")),
                        user_type=_as_string(user_obj.get("type")),
                        html_url=_as_string(item_obj.get("html_url")),
                        created_at=_as_string(item_obj.get("created_at")),
                        updated_at=_as_string(item_obj.get("updated_at")),
                    )
                )
            if len(payload) < 100:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def enable_auto_merge(self, pr: PullRequestSnapshot, method: MergeMethod) -> MergeAttemptResult:
        if not pr.node_id:
            return MergeAttemptResult(False, "Pull request node id is unknown", unavailable=True)
        raw = run(
            [
                "gh",
                "api",
                "graphql",
                "-f",
                f"query={_ENABLE_AUTO_MERGE_MUTATION}",
                "-f",
                f"pullRequestId={pr.node_id}",
                "-f",
                f"mergeMethod={method.upper()}",
            ],
            check=False,
        )
        try:
            payload_obj = _as_object_dict(json.loads(raw)) if raw.strip() else None
        except json.JSONDecodeError:
            payload_obj = None
        if payload_obj is None:
            return MergeAttemptResult(False, "Empty or malformed GraphQL response")
        errors = payload_obj.get("errors")
        if isinstance(errors, list) and errors:
            messages = [
                _as_string((_as_object_dict(entry) or {}).get("message")) for entry in errors
            ]
            message = "; ".join(item for item in messages if item) or "GraphQL error"
            unavailable = any(
                marker in message.lower() for marker in _AUTO_MERGE_UNAVAILABLE_MARKERS
            )
            return MergeAttemptResult(False, message, unavailable=unavailable)
        log_event(LOGGER, "auto_merge_enabled", pr_number=pr.number, merge_method=method)
        return MergeAttemptResult(True, f"Auto-merge enabled with {method}")

    def merge_pull_request(
        self, pr_number: int, method: MergeMethod, *, commit_title: str, commit_message: str
    ) -> MergeAttemptResult:
        try:
            payload = self._write_json(
                "PUT",
                f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge",
                {
                    "merge_method": method,
                    "commit_title": commit_title,
                    "commit_message": commit_message,
                },
            )
        except GitHubApiError as exc:
            if exc.status in {405, 409, 422}:
                return MergeAttemptResult(False, str(exc))
            raise
        payload_obj = _as_object_dict(payload) or {}
        merged = payload_obj.get("merged")
        message = _as_string(payload_obj.get("message")) or "merged"
        if merged is not True:
            return MergeAttemptResult(False, message)
        log_event(LOGGER, "pull_request_merged", pr_number=pr_number, merge_method=method)
        return MergeAttemptResult(True, message)

    def _get_json(self, path: str) -> object:
        try:
            return with_backoff(
                lambda: self._get_json_once(path),
                is_transient=is_transient_github_error,
                policy=self.retry_policy,
                operation=f"GET {path}",
                sleep=self.sleep,
            )
        except GitHubPollingError:
            raise
        except GitHubApiError as exc:
            raise GitHubPollingError(str(exc), status=exc.status) from exc

    def _get_json_once(self, path: str) -> object:
        cmd = ["gh", "api", "--method", "GET"]
        cached = self._get_cache.get(path)
        if cached is not None:
            cmd.extend(["--header", f"If-None-Match: {cached[0]}"])
        cmd.extend(["--include", path])

        raw = run(cmd, check=False)
        status_code, headers, body = _parse_http_response_or_raise(raw, path=path)
        if status_code == 304:
            if cached is None:
                raise GitHubPollingError(
                    f"GitHub returned 304 for uncached path: {path}", status=304
                )
            return cached[1]
        if status_code < 200 or status_code >= 300:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                status=status_code,
                raw_preview=_preview_for_log(body),
            )
            raise GitHubPollingError(
                f"GitHub GET {path} failed with status {status_code}: {body.strip() or '<empty>'}",
                status=status_code,
            )
        payload_obj = json.loads(body)
        etag = headers.get("etag")
        if etag:
            self._get_cache[path] = (etag, payload_obj)
        return payload_obj

    def _write_json(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        return with_backoff(
            lambda: self._write_json_once(method, path, payload),
            is_transient=is_transient_github_error,
            policy=self.retry_policy,
            operation=f"{method} {path}",
            sleep=self.sleep,
        )

    def _write_json_once(
        self, method: str, path: str, payload: dict[str, object] | None
    ) -> object:
        cmd = ["gh", "api", "--method", method.upper(), "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, check=False)
        status_code, _headers, body = _parse_http_response_or_raise(raw, path=path)
        if status_code < 200 or status_code >= 300:
            raise GitHubApiError(
                f"GitHub {method.upper()} {path} failed with status {status_code}: "
                f"{body.strip() or '<empty>'}",
                status=status_code,
            )
        if not body.strip():
            return None
        return json.loads(body)


def _parse_http_response_or_raise(raw: str, *, path: str) -> tuple[int, dict[str, str], str]:
    try:
        return _parse_http_response(raw)
    except ValueError as exc:
        raise GitHubApiError(f"No HTTP response from gh for {path}: {exc}", status=None) from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index
            break

    if status_line_index < 0:
        raise ValueError("missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2 or not status_parts[1].isdigit():
        raise ValueError(f"unexpected status line {status_line!r}")
    status_code = int(status_parts[1])

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    return status_code, headers, "\n".join(lines[body_start:])


def _parse_issue(item_obj: dict[str, object]) -> Issue:
    user_obj = _as_object_dict(item_obj.get("user"))
    return Issue(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        labels=_label_names(item_obj.get("labels")),
        author_login=_as_login(user_obj.get("login") if user_obj else None),
    )


def _parse_pull_request(item_obj: dict[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(item_obj.get("head"))
    base = _as_object_dict(item_obj.get("base"))
    if head is None or base is None:
        raise GitHubPollingError("Unexpected GitHub response: missing head/base", status=200)
    mergeable = item_obj.get("mergeable")
    return PullRequestSnapshot(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        state=_as_string(item_obj.get("state")),
        head_ref=_as_string(head.get("ref")),
        base_ref=_as_string(base.get("ref")),
        head_sha=_as_string(head.get("sha")),
        mergeable=mergeable if isinstance(mergeable, bool) else None,
        mergeable_state=_as_optional_str(item_obj.get("mergeable_state")),
        draft=item_obj.get("draft") is True,
        merged=item_obj.get("merged") is True,
        updated_at=_as_string(item_obj.get("updated_at")),
        labels=_label_names(item_obj.get("labels")),
        node_id=_as_string(item_obj.get("node_id")),
    )


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}", status=200)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(
                f"Unexpected GitHub response value for {field}: {value}", status=200
            ) from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}", status=200)
