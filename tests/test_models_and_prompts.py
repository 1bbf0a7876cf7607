from __future__ import annotations

import pytest

from issuesmith import __version__
from issuesmith.agent_adapter import CLARIFICATION_SENTINEL, extract_clarification
from issuesmith.models import (
    JOB_STATUSES,
    MERGE_METHODS,
    ActionableComment,
    ActiveBranch,
    AutoMergeSettings,
    Issue,
    IssueComment,
    LearnedRule,
)
from issuesmith.prompts import (
    COMMENT_MARKER,
    auto_merge_comment,
    build_association_prompt,
    build_conflict_prompt,
    build_issue_prompt,
    cancelled_comment,
    clarification_comment,
    commit_message,
    escalation_comment,
    failure_comment,
    finished_comment,
    future_fix_issue_body,
    future_fix_summary_comment,
    no_changes_comment,
    pull_request_body,
    pull_request_title,
    resolution_failed_comment,
    resolved_comment,
    started_comment,
    with_marker,
)


ISSUE = Issue(
    number=42,
    title="Fix typo in README",
    body="The word 'recieve' is misspelled.",
    html_url="https://github.com/acme/widgets/issues/42",
    labels=("issuesmith",),
)


def _comment(comment_id: int, body: str, login: str = "alice") -> IssueComment:
    return IssueComment(
        comment_id=comment_id,
        body=body,
        user_login=login,
        user_type="User",
        html_url=f"https://github.com/acme/widgets/issues/42#issuecomment-{comment_id}",
        created_at="2026-01-01T00:00:00Z",
        updated_at="2026-01-01T00:00:00Z",
    )


def test_version_and_constants() -> None:
    assert __version__
    assert JOB_STATUSES == ("pending", "in-progress", "done", "waiting", "failed", "cancelled")
    assert MERGE_METHODS == ("merge", "squash", "rebase")
    assert AutoMergeSettings() == AutoMergeSettings(
        enabled=True,
        auto_merge_clean=True,
        auto_resolve_conflicts=True,
        merge_method="merge",
        stale_pr_days=7.0,
        max_resolution_attempts=3,
    )


def test_issue_prompt_for_new_branch() -> None:
    prompt = build_issue_prompt(
        issue=ISSUE,
        repo_full_name="acme/widgets",
        branch="work/issue-42-fix-typo-in-readme",
        joining_branch=False,
        comments=(
            _comment(1, "It's in the install section."),
            _comment(2, with_marker("**issuesmith** is working on this issue."), login="bot"),
        ),
        coding_guidelines="docs/CONTRIBUTING.md",
    )

    assert "repository acme/widgets" in prompt
    assert "Resolve issue #42" in prompt
    assert "new branch work/issue-42-fix-typo-in-readme" in prompt
    assert "docs/CONTRIBUTING.md" in prompt
    assert CLARIFICATION_SENTINEL in prompt
    assert "@alice wrote:\nIt's in the install section." in prompt
    assert "@bot" not in prompt
    assert "follow-up requests" not in prompt


def test_issue_prompt_when_joining_with_follow_ups() -> None:
    prompt = build_issue_prompt(
        issue=ISSUE,
        repo_full_name="acme/widgets",
        branch="work/issue-7-docs",
        joining_branch=True,
        comments=(),
        follow_ups=(
            ActionableComment(
                comment_id=9,
                action_type="fix",
                confidence=0.9,
                extracted_request="Also fix 'occured' on the same page",
            ),
        ),
    )

    assert "existing branch work/issue-7-docs" in prompt
    assert "Discussion so far" not in prompt
    assert "- [fix] Also fix 'occured' on the same page" in prompt
    assert "Follow the style of the surrounding code" in prompt


def test_issue_prompt_keeps_recent_comments_only() -> None:
    comments = tuple(_comment(index, f"note {index}") for index in range(30))
    long_comment = _comment(99, "y" * 3000)

    prompt = build_issue_prompt(
        issue=ISSUE,
        repo_full_name="acme/widgets",
        branch="b",
        joining_branch=False,
        comments=(*comments, long_comment),
    )

    assert "note 10\n" not in prompt
    assert "note 29" in prompt
    assert "y" * 2000 + "..." in prompt


def test_conflict_prompt_lists_files() -> None:
    prompt = build_conflict_prompt(
        repo_full_name="acme/widgets",
        pr_number=7,
        pr_title="fix(#42): Fix typo",
        base_ref="main",
        files_to_resolve=("src/app.py", "README.md"),
    )

    assert "pull request #7 of acme/widgets" in prompt
    assert "The base branch main was merged" in prompt
    assert "- src/app.py\n- README.md" in prompt
    assert "Do not edit any other file." in prompt
    assert "Repository rules" not in prompt


def _rule(rule_id: int, kind: str, text: str) -> LearnedRule:
    return LearnedRule(
        rule_id=rule_id,
        repo_full_name="acme/widgets",
        kind=kind,  # type: ignore[arg-type]
        text=text,
        created_at="2026-01-01T00:00:00.000Z",
    )


def test_learned_rules_are_grouped_into_both_prompts() -> None:
    rules = (
        _rule(1, "do", "Add a changelog entry"),
        _rule(3, "do", "Run ruff before finishing"),
        _rule(2, "dont", "Touch generated files under gen/"),
    )
    issue_prompt = build_issue_prompt(
        issue=ISSUE,
        repo_full_name="acme/widgets",
        branch="b",
        joining_branch=False,
        comments=(_comment(1, "See the install section."),),
        rules=rules,
    )
    conflict_prompt = build_conflict_prompt(
        repo_full_name="acme/widgets",
        pr_number=7,
        pr_title="t",
        base_ref="main",
        files_to_resolve=("src/app.py",),
        rules=rules[2:],
    )

    expected = (
        "Repository rules:\nAlways:\n- Add a changelog entry\n- Run ruff before finishing\n"
        "Never:\n- Touch generated files under gen/"
    )
    assert expected in issue_prompt
    assert issue_prompt.index("Repository rules") < issue_prompt.index("Discussion so far")
    assert conflict_prompt.endswith(
        "Repository rules:\nNever:\n- Touch generated files under gen/"
    )
    assert "Always:" not in conflict_prompt


def test_association_prompt_enumerates_branches() -> None:
    prompt = build_association_prompt(
        issue=ISSUE,
        active_branches=(
            ActiveBranch(branch="work/issue-7-docs", pr_number=7, pr_title="Docs", pr_body=""),
            ActiveBranch(
                branch="work/issue-8-api", pr_number=8, pr_title="", pr_body="API cleanup"
            ),
        ),
    )

    assert "New issue #42:" in prompt
    assert "1. Name: work/issue-7-docs\n   PR #7 title: Docs\n   PR body: N/A" in prompt
    assert "2. Name: work/issue-8-api\n   PR #8 title: N/A\n   PR body: API cleanup" in prompt
    assert '{"action": "CREATE_NEW" or "JOIN"' in prompt


@pytest.mark.parametrize(
    "joining,resumed,expected_lead,expected_branch",
    [
        (False, False, "is working on this issue", "Working on new branch `b`."),
        (True, False, "is working on this issue", "Continuing work on existing branch `b`."),
        (False, True, "is resuming work on this issue", "Working on new branch `b`."),
    ],
)
def test_started_comment(
    joining: bool, resumed: bool, expected_lead: str, expected_branch: str
) -> None:
    body = started_comment(branch="b", joining_branch=joining, resumed=resumed, reason="new work")

    assert expected_lead in body
    assert expected_branch in body
    assert "Branch decision: new work" in body
    assert body.endswith(COMMENT_MARKER)


def test_clarification_comment_round_trips_question() -> None:
    body = clarification_comment("Which README?")

    assert "> Which README?" in body
    assert "work resumes automatically" in body
    assert extract_clarification(f"{CLARIFICATION_SENTINEL} Which README?") == "Which README?"


def test_outcome_comments() -> None:
    finished = finished_comment(
        pr_url="https://github.com/acme/widgets/pull/7",
        files_changed=("README.md",),
        summary="Fixed it.",
        updated_existing=False,
    )
    updated = finished_comment(
        pr_url="u", files_changed=(), summary="", updated_existing=True
    )

    assert "Pull request: https://github.com/acme/widgets/pull/7" in finished
    assert "**Files changed:** `README.md`" in finished
    assert "updated the existing pull request" in updated
    assert "**Files changed:** none" in updated
    assert "no code changes are required" in no_changes_comment("Already fixed upstream.")
    assert "```\nboom\n```" in failure_comment("boom")
    assert "cancelled" in cancelled_comment()
    for body in (finished, updated, cancelled_comment()):
        assert body.count(COMMENT_MARKER) == 1


def test_pull_request_and_commit_text() -> None:
    assert pull_request_title(ISSUE) == "fix(#42): Fix typo in README"
    body = pull_request_body(ISSUE, summary="Fixed spelling.", files_changed=("README.md",))
    assert body.startswith("Resolves #42\n")
    assert "- `README.md`" in body
    assert "- none" in pull_request_body(ISSUE, summary="", files_changed=())
    assert commit_message(ISSUE, "Fixed spelling.") == (
        "fix(#42): Fix typo in README\n\nFixed spelling."
    )


def test_merge_policy_comments() -> None:
    escalation = escalation_comment(files=("db/migrations/001.sql",), reason="Protected files")
    failed = resolution_failed_comment(error="agent failed", remaining_attempts=2)

    assert "needs a human" in escalation
    assert "- `db/migrations/001.sql`" in escalation
    assert "needs a human" in escalation_comment(files=(), reason="failed 3 times")
    assert "Remaining automatic attempts: 2." in failed
    assert "- `src/app.py`" in resolved_comment(files=("src/app.py",))
    assert "enabled auto-merge using the **squash** method" in auto_merge_comment(
        method="squash", direct=False
    )
    assert "merged this pull request using the **merge** method" in auto_merge_comment(
        method="merge", direct=True
    )


def test_future_fix_text() -> None:
    body = future_fix_issue_body(
        source_number=42, source_url="https://x/42", request="Later, add caching."
    )
    summary = future_fix_summary_comment(((101, "Add caching"), (102, "Split module")))

    assert body.startswith("Deferred work noted on #42 (https://x/42):")
    assert "> Later, add caching." in body
    assert "- #101: Add caching\n- #102: Split module" in summary


def test_with_marker_strips_trailing_whitespace() -> None:
    assert with_marker("hello \n\n") == f"hello\n\n{COMMENT_MARKER}"
