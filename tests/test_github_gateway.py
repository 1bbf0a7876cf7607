from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import pytest

from issuesmith.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    GitHubPollingError,
    _as_int,
    _parse_http_response,
    _preview_for_log,
    is_transient_github_error,
)
from issuesmith.models import PullRequestSnapshot
from issuesmith.retry import RetryPolicy


def _http(status: int, body: object = None, *, headers: dict[str, str] | None = None) -> str:
    header_lines = "".join(f"{key}: {value}\r\n" for key, value in (headers or {}).items())
    text = "" if body is None else json.dumps(body)
    return f"HTTP/2.0 {status} X\r\n{header_lines}\r\n{text}"


class FakeGh:
    """Replays scripted gh responses and records every command."""

    def __init__(self, responses: list[str]) -> None:
        self.responses = responses
        self.calls: list[tuple[list[str], str | None]] = []

    def __call__(
        self,
        cmd: list[str],
        *,
        cwd: object = None,
        input_text: str | None = None,
        check: bool = True,
        timeout_seconds: float | None = None,
    ) -> str:
        assert check is False
        self.calls.append((cmd, input_text))
        return self.responses.pop(0)

    def path(self, index: int) -> str:
        cmd = self.calls[index][0]
        return cmd[-1] if "--input" not in cmd else cmd[cmd.index("--include") + 1]

    def payload(self, index: int) -> object:
        raw = self.calls[index][1]
        return None if raw is None else json.loads(raw)


def _gateway(
    monkeypatch: pytest.MonkeyPatch, responses: list[str]
) -> tuple[GitHubGateway, FakeGh]:
    fake = FakeGh(responses)
    monkeypatch.setattr("issuesmith.github_gateway.run", fake)
    gateway = GitHubGateway(
        "acme", "widgets", retry_policy=RetryPolicy(max_attempts=3), sleep=lambda _: None
    )
    return gateway, fake


def _pull_payload(number: int, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "number": number,
        "title": f"PR {number}",
        "body": None,
        "html_url": f"https://github.com/acme/widgets/pull/{number}",
        "state": "open",
        "head": {"ref": f"work/issue-{number}-x", "sha": "abc"},
        "base": {"ref": "main"},
        "mergeable": None,
        "mergeable_state": "unknown",
        "draft": False,
        "merged": False,
        "updated_at": "2026-01-01T00:00:00Z",
        "labels": [{"name": "issuesmith"}],
        "node_id": f"PR_{number}",
    }
    payload.update(overrides)
    return payload


def test_list_open_issues_skips_pull_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    body = [
        {
            "number": 42,
            "title": "Fix typo",
            "body": None,
            "html_url": "https://github.com/acme/widgets/issues/42",
            "user": {"login": "  Alice "},
            "labels": [{"name": "issuesmith"}, 9],
        },
        {"pull_request": {"url": "x"}, "number": 7},
        "junk",
    ]
    gateway, fake = _gateway(monkeypatch, [_http(200, body)])

    issues = gateway.list_open_issues_with_label("issuesmith")

    assert [issue.number for issue in issues] == [42]
    assert issues[0].labels == ("issuesmith",)
    assert issues[0].body == ""
    assert issues[0].author_login == "alice"
    query = parse_qs(urlparse(fake.path(0)).query)
    assert query == {"state": ["open"], "labels": ["issuesmith"], "per_page": ["100"]}


def test_etag_cache_serves_not_modified(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [_http(200, [], headers={"ETag": 'W/"v1"'}), _http(304)],
    )

    assert gateway.list_open_issues_with_label("issuesmith") == []
    assert gateway.list_open_issues_with_label("issuesmith") == []

    second_cmd = fake.calls[1][0]
    assert second_cmd[second_cmd.index("--header") + 1] == 'If-None-Match: W/"v1"'


def test_not_modified_pairs_payload_with_the_etag_sent(monkeypatch: pytest.MonkeyPatch) -> None:
    issue = {
        "number": 42,
        "title": "Fix typo",
        "body": "",
        "html_url": "https://github.com/acme/widgets/issues/42",
        "labels": [],
    }
    gateway, fake = _gateway(monkeypatch, [_http(200, [issue], headers={"ETag": '"v1"'})])
    assert [item.number for item in gateway.list_open_issues_with_label("issuesmith")] == [42]
    path = fake.path(0)

    def refreshed_elsewhere(cmd: list[str], **kwargs: object) -> str:
        # Another poll thread stores a newer entry while this request is in flight.
        gateway._get_cache[path] = ('"v2"', [])
        assert 'If-None-Match: "v1"' in cmd
        return _http(304)

    monkeypatch.setattr("issuesmith.github_gateway.run", refreshed_elsewhere)

    assert [item.number for item in gateway.list_open_issues_with_label("issuesmith")] == [42]


def test_not_modified_without_cache_is_polling_error(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, _ = _gateway(monkeypatch, [_http(304)])

    with pytest.raises(GitHubPollingError, match="uncached path"):
        gateway.get_pull_request(42)


def test_get_retries_server_errors_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [_http(502, {"message": "bad gateway"}), "gh: connection reset", _http(200, [])],
    )

    assert gateway.list_open_pull_requests() == []
    assert len(fake.calls) == 3


def test_get_gives_up_after_max_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(monkeypatch, [_http(503, {}), _http(503, {}), _http(503, {})])

    with pytest.raises(GitHubPollingError) as exc_info:
        gateway.get_pull_request(42)
    assert exc_info.value.status == 503
    assert len(fake.calls) == 3


def test_get_client_error_is_polling_error_without_retry(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    gateway, fake = _gateway(monkeypatch, [_http(404, {"message": "Not Found"})])

    with pytest.raises(GitHubPollingError, match="status 404") as exc_info:
        gateway.get_pull_request(9)
    assert exc_info.value.status == 404
    assert len(fake.calls) == 1


def test_pull_request_parsing_and_label_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    body = [
        _pull_payload(7, mergeable=False, mergeable_state="dirty"),
        _pull_payload(8, labels=[], draft=True),
    ]
    gateway, _ = _gateway(monkeypatch, [_http(200, body), _http(200, body)])

    everything = gateway.list_open_pull_requests()
    labelled = gateway.list_open_pull_requests(label="issuesmith")

    assert [pull.number for pull in everything] == [7, 8]
    first = everything[0]
    assert first.head_ref == "work/issue-7-x"
    assert first.base_ref == "main"
    assert first.mergeable is False
    assert first.mergeable_state == "dirty"
    assert first.body == ""
    assert first.node_id == "PR_7"
    assert everything[1].draft is True
    assert everything[1].mergeable is None
    assert [pull.number for pull in labelled] == [7]


def test_pull_request_without_head_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, _ = _gateway(monkeypatch, [_http(200, _pull_payload(7, head=None))])

    with pytest.raises(GitHubPollingError, match="missing head/base"):
        gateway.get_pull_request(7)


def test_find_pull_request_by_head_picks_newest(monkeypatch: pytest.MonkeyPatch) -> None:
    body = [
        {"number": 3, "html_url": "u3"},
        {"number": 11, "html_url": "u11"},
    ]
    gateway, fake = _gateway(monkeypatch, [_http(200, body), _http(200, [])])

    found = gateway.find_pull_request_by_head(head="work/issue-42-fix", state="all")
    missing = gateway.find_pull_request_by_head(head="work/none")

    assert found is not None and found.number == 11
    assert missing is None
    query = parse_qs(urlparse(fake.path(0)).query)
    assert query["head"] == ["acme:work/issue-42-fix"]
    assert query["state"] == ["all"]
    with pytest.raises(ValueError):
        gateway.find_pull_request_by_head(head="x", state="closed")  # type: ignore[arg-type]


def test_create_branch_from_base_tip(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [
            _http(200, {"object": {"sha": "base-sha"}}),
            _http(201, {"ref": "refs/heads/work/issue-42-fix-typo"}),
            _http(200, {"object": {"sha": "base-sha"}}),
            _http(422, {"message": "Reference already exists"}),
        ],
    )

    assert gateway.create_branch("work/issue-42-fix-typo", from_branch="main") is True
    assert gateway.create_branch("work/issue-42-fix-typo", from_branch="main") is False

    assert fake.path(0) == "/repos/acme/widgets/git/ref/heads/main"
    assert fake.payload(1) == {"ref": "refs/heads/work/issue-42-fix-typo", "sha": "base-sha"}


def test_create_pull_request_and_issue(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [
            _http(201, {"number": 7, "html_url": "https://github.com/acme/widgets/pull/7"}),
            _http(201, {"number": "101", "html_url": "https://github.com/acme/widgets/issues/101"}),
        ],
    )

    pr = gateway.create_pull_request("fix(#42): Fix typo", "work/issue-42-fix-typo", "main", "b")
    issue = gateway.create_issue("Follow-up", "body", ("issuesmith:future-fix",))

    assert pr.number == 7
    assert issue.number == 101
    assert fake.payload(0) == {
        "title": "fix(#42): Fix typo",
        "head": "work/issue-42-fix-typo",
        "base": "main",
        "body": "b",
    }
    assert fake.payload(1) == {
        "title": "Follow-up",
        "body": "body",
        "labels": ["issuesmith:future-fix"],
    }


def test_write_client_error_is_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(monkeypatch, [_http(403, {"message": "Forbidden"})])

    with pytest.raises(GitHubApiError, match="status 403"):
        gateway.post_issue_comment(42, "hello")
    assert len(fake.calls) == 1


def test_labels_add_and_remove(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [_http(200, []), _http(200, []), _http(404, {"message": "Label does not exist"})],
    )

    gateway.add_labels(42, ("issuesmith:in-progress",))
    gateway.remove_label(42, "issuesmith:waiting")
    gateway.remove_label(42, "issuesmith:done")

    assert fake.payload(0) == {"labels": ["issuesmith:in-progress"]}
    delete_cmd = fake.calls[1][0]
    assert delete_cmd[:4] == ["gh", "api", "--method", "DELETE"]
    assert delete_cmd[-1] == "/repos/acme/widgets/issues/42/labels/issuesmith%3Awaiting"


def test_issue_comments_paginate(monkeypatch: pytest.MonkeyPatch) -> None:
    def comment(comment_id: int) -> dict[str, object]:
        return {
            "id": comment_id,
            "body": "text",
            "user": {"login": "Alice", "type": "User"},
            "html_url": f"u{comment_id}",
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00Z",
        }

    first_page = [comment(index) for index in range(1, 101)]
    gateway, fake = _gateway(
        monkeypatch, [_http(200, first_page), _http(200, [comment(101), {"id": 102}])]
    )

    comments = gateway.list_issue_comments(42)

    assert len(comments) == 102
    assert comments[0].user_login == "alice"
    assert comments[0].user_type == "User"
    assert comments[-1].user_login == ""
    assert parse_qs(urlparse(fake.path(1)).query)["page"] == ["2"]


def _snapshot(node_id: str = "PR_7") -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=7,
        title="Fix typo",
        body="",
        html_url="u",
        state="open",
        head_ref="work/issue-42-fix-typo",
        base_ref="main",
        head_sha="abc",
        mergeable=True,
        mergeable_state="clean",
        draft=False,
        merged=False,
        updated_at="2026-01-01T00:00:00Z",
        node_id=node_id,
    )


def test_enable_auto_merge_outcomes(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [
            json.dumps({"data": {"enablePullRequestAutoMerge": {}}}),
            json.dumps({"errors": [{"message": "Auto merge is not allowed for this repository"}]}),
            json.dumps({"errors": [{"message": "Resource not accessible"}]}),
            "",
        ],
    )

    enabled = gateway.enable_auto_merge(_snapshot(), "squash")
    unavailable = gateway.enable_auto_merge(_snapshot(), "squash")
    denied = gateway.enable_auto_merge(_snapshot(), "merge")
    empty = gateway.enable_auto_merge(_snapshot(), "merge")
    no_node = gateway.enable_auto_merge(_snapshot(node_id=""), "merge")

    assert enabled.success is True
    assert "mergeMethod=SQUASH" in fake.calls[0][0]
    assert "pullRequestId=PR_7" in fake.calls[0][0]
    assert (unavailable.success, unavailable.unavailable) == (False, True)
    assert (denied.success, denied.unavailable) == (False, False)
    assert denied.message == "Resource not accessible"
    assert empty.success is False
    assert (no_node.success, no_node.unavailable) == (False, True)
    assert len(fake.calls) == 4


def test_merge_pull_request_outcomes(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway, fake = _gateway(
        monkeypatch,
        [
            _http(200, {"merged": True, "message": "Pull Request successfully merged"}),
            _http(405, {"message": "Pull Request is not mergeable"}),
            _http(403, {"message": "Forbidden"}),
        ],
    )

    merged = gateway.merge_pull_request(7, "rebase", commit_title="t", commit_message="m")
    refused = gateway.merge_pull_request(7, "rebase", commit_title="t", commit_message="m")

    assert merged.success is True
    assert fake.payload(0) == {"merge_method": "rebase", "commit_title": "t", "commit_message": "m"}
    assert refused.success is False
    assert "not mergeable" in refused.message
    with pytest.raises(GitHubApiError):
        gateway.merge_pull_request(7, "rebase", commit_title="t", commit_message="m")


def test_parse_http_response() -> None:
    status, headers, body = _parse_http_response(
        "noise\r\nHTTP/1.1 201 Created\r\nETag: abc\r\nbroken header\r\n\r\n{}"
    )
    assert status == 201
    assert headers == {"etag": "abc"}
    assert body == "{}"
    with pytest.raises(ValueError, match="missing HTTP status line"):
        _parse_http_response("gh: not logged in")
    with pytest.raises(ValueError, match="unexpected status line"):
        _parse_http_response("HTTP/1.1 abc")


@pytest.mark.parametrize(
    "exc,expected",
    [
        (GitHubApiError("x", status=None), True),
        (GitHubApiError("x", status=503), True),
        (GitHubApiError("x", status=429), True),
        (GitHubApiError("x", status=422), False),
        (RuntimeError("x"), False),
    ],
)
def test_is_transient_github_error(exc: BaseException, expected: bool) -> None:
    assert is_transient_github_error(exc) is expected


def test_small_helpers() -> None:
    assert _as_int("12", field="n") == 12
    with pytest.raises(GitHubApiError):
        _as_int(True, field="n")
    with pytest.raises(GitHubApiError):
        _as_int("x", field="n")
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("a" * 300).endswith("...")
