from __future__ import annotations

from issuesmith.agent_adapter import CLARIFICATION_SENTINEL
from issuesmith.models import ActionableComment, ActiveBranch, Issue, IssueComment, LearnedRule


# Hidden marker appended to every comment the daemon posts so the comment
# classifier can recognize its own messages regardless of the posting account.
COMMENT_MARKER = "<!-- issuesmith -->"
CLARIFICATION_HEADER = "**issuesmith** needs clarification:"

_MAX_PROMPT_COMMENTS = 20
_MAX_COMMENT_CHARS = 2000


def _guidelines_line(coding_guidelines: str | None) -> str:
    if coding_guidelines:
        return f"- Follow the coding and testing guidelines in: {coding_guidelines}"
    return "- Follow the style of the surrounding code and add tests where the repo has them."


def _rules_section(rules: tuple[LearnedRule, ...]) -> str:
    always = [f"- {rule.text}" for rule in rules if rule.kind == "do"]
    never = [f"- {rule.text}" for rule in rules if rule.kind == "dont"]
    if not always and not never:
        return ""
    lines = ["Repository rules:"]
    if always:
        lines.extend(["Always:", *always])
    if never:
        lines.extend(["Never:", *never])
    return "\n".join(lines)


def _truncate(text: str, limit: int = _MAX_COMMENT_CHARS) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return f"{stripped[:limit]}..."


def build_issue_prompt(
    *,
    issue: Issue,
    repo_full_name: str,
    branch: str,
    joining_branch: bool,
    comments: tuple[IssueComment, ...],
    follow_ups: tuple[ActionableComment, ...] = (),
    coding_guidelines: str | None = None,
    rules: tuple[LearnedRule, ...] = (),
) -> str:
    branch_line = (
        f"- You are continuing work on the existing branch {branch}; keep its prior changes."
        if joining_branch
        else f"- Your changes will be pushed to the new branch {branch}."
    )
    conversation = "\n\n".join(
        f"@{comment.user_login or 'unknown'} wrote:\n{_truncate(comment.body)}"
        for comment in comments[-_MAX_PROMPT_COMMENTS:]
        if COMMENT_MARKER not in comment.body
    )
    follow_up_lines = "\n".join(
        f"- [{item.action_type}] {_truncate(item.extracted_request, 500)}" for item in follow_ups
    )
    sections = [
        f"""
You are the coding agent for repository {repo_full_name}.

Task:
- Resolve issue #{issue.number} by editing files in the current working directory.
{branch_line}
{_guidelines_line(coding_guidelines)}
- Do not commit, push, or create branches; the caller does that.
- If the issue is too ambiguous to act on, change nothing and reply with a single line:
  {CLARIFICATION_SENTINEL} <your question>

Issue title:
{issue.title}

Issue URL:
{issue.html_url}

Issue body:
{issue.body}
""".strip()
    ]
    rules_section = _rules_section(rules)
    if rules_section:
        sections.append(rules_section)
    if conversation:
        sections.append(f"Discussion so far:\n{conversation}")
    if follow_up_lines:
        sections.append(f"Address these follow-up requests from reviewers:\n{follow_up_lines}")
    return "\n\n".join(sections)


def build_conflict_prompt(
    *,
    repo_full_name: str,
    pr_number: int,
    pr_title: str,
    base_ref: str,
    files_to_resolve: tuple[str, ...],
    coding_guidelines: str | None = None,
    rules: tuple[LearnedRule, ...] = (),
) -> str:
    file_lines = "\n".join(f"- {path}" for path in files_to_resolve)
    prompt = f"""
You are resolving a merge conflict in pull request #{pr_number} of {repo_full_name}.

Context: {pr_title}

The base branch {base_ref} was merged into this branch and the following files
contain git conflict markers:
{file_lines}

Task:
- Resolve every conflict in exactly these files and remove all conflict markers.
- Keep the intent of both sides; the result must build and pass existing tests.
- Do not edit any other file. Leave staging and committing to the caller.
{_guidelines_line(coding_guidelines)}
""".strip()
    rules_section = _rules_section(rules)
    return f"{prompt}\n\n{rules_section}" if rules_section else prompt


def build_association_prompt(*, issue: Issue, active_branches: tuple[ActiveBranch, ...]) -> str:
    branch_lines = "\n\n".join(
        f"{index}. Name: {branch.branch}\n"
        f"   PR #{branch.pr_number} title: {branch.pr_title or 'N/A'}\n"
        f"   PR body: {_truncate(branch.pr_body, 800) or 'N/A'}"
        for index, branch in enumerate(active_branches, start=1)
    )
    return f"""
You are a technical lead deciding where new work belongs.
A new issue arrived while these branches have open pull requests.
Decide whether the issue should be added to one of the existing branches or needs a new branch.

New issue #{issue.number}:
Title: {issue.title}
Body: {_truncate(issue.body, 1500) or 'N/A'}

Active branches:
{branch_lines}

Guidelines:
- JOIN only when the issue is a small change tightly related to one existing pull request.
- A distinct feature, or a bug in another part of the system, needs CREATE_NEW.
- If in doubt, choose CREATE_NEW.

Reply with exactly one JSON object and nothing else:
{{"action": "CREATE_NEW" or "JOIN", "branch": "<branch if JOIN>", "reason": "<one sentence>"}}
""".strip()


def with_marker(body: str) -> str:
    return f"{body.rstrip()}\n\n{COMMENT_MARKER}"


def started_comment(*, branch: str, joining_branch: bool, resumed: bool, reason: str) -> str:
    branch_text = (
        f"Continuing work on existing branch `{branch}`."
        if joining_branch
        else f"Working on new branch `{branch}`."
    )
    lead = (
        "**issuesmith** is resuming work on this issue."
        if resumed
        else "**issuesmith** is working on this issue."
    )
    return with_marker(f"{lead}\n\n{branch_text}\n\nBranch decision: {reason}")


def clarification_comment(question: str) -> str:
    return with_marker(
        f"{CLARIFICATION_HEADER}\n\n> {question}\n\n"
        "Reply below and work resumes automatically."
    )


def no_changes_comment(summary: str) -> str:
    return with_marker(
        "**issuesmith** reviewed the issue and determined that no code changes are required."
        f"\n\n**Summary:**\n{_truncate(summary)}"
    )


def finished_comment(
    *, pr_url: str, files_changed: tuple[str, ...], summary: str, updated_existing: bool
) -> str:
    lead = (
        "**issuesmith** updated the existing pull request."
        if updated_existing
        else "**issuesmith** finished."
    )
    files = ", ".join(f"`{path}`" for path in files_changed) or "none"
    return with_marker(
        f"{lead}\n\nPull request: {pr_url}\n\n**Files changed:** {files}\n\n"
        f"**Summary:**\n{_truncate(summary)}"
    )


def failure_comment(error: str) -> str:
    return with_marker(
        f"**issuesmith** could not complete this issue:\n```\n{_truncate(error)}\n```\n\n"
        "Add a comment with more detail or remove the failed label to retry."
    )


def cancelled_comment() -> str:
    return with_marker("**issuesmith** stopped. This task was cancelled as requested.")


def pull_request_title(issue: Issue) -> str:
    return f"fix(#{issue.number}): {issue.title}"


def pull_request_body(issue: Issue, *, summary: str, files_changed: tuple[str, ...]) -> str:
    files = "\n".join(f"- `{path}`" for path in files_changed) or "- none"
    return (
        f"Resolves #{issue.number}\n\n## Summary\n{_truncate(summary)}\n\n"
        f"## Files changed\n{files}\n\n{COMMENT_MARKER}"
    )


def commit_message(issue: Issue, summary: str) -> str:
    return f"fix(#{issue.number}): {issue.title}\n\n{_truncate(summary, 4000)}"


def escalation_comment(*, files: tuple[str, ...], reason: str) -> str:
    file_lines = "\n".join(f"- `{path}`" for path in files)
    body = (
        "**issuesmith** needs a human to resolve the merge conflicts on this pull request."
        f"\n\n{reason}"
    )
    if file_lines:
        body = f"{body}\n\n{file_lines}"
    return with_marker(body)


def resolution_failed_comment(*, error: str, remaining_attempts: int) -> str:
    return with_marker(
        "**issuesmith** could not resolve the merge conflicts on this pull request.\n"
        f"```\n{_truncate(error, 1000)}\n```\n"
        f"Remaining automatic attempts: {remaining_attempts}."
    )


def resolved_comment(*, files: tuple[str, ...]) -> str:
    file_lines = "\n".join(f"- `{path}`" for path in files)
    return with_marker(
        f"**issuesmith** resolved merge conflicts and pushed the result.\n\n{file_lines}"
    )


def auto_merge_comment(*, method: str, direct: bool) -> str:
    if direct:
        return with_marker(
            f"**issuesmith** merged this pull request using the **{method}** method."
        )
    return with_marker(
        f"**issuesmith** enabled auto-merge using the **{method}** method. "
        "It will merge once required checks pass."
    )


def future_fix_issue_body(*, source_number: int, source_url: str, request: str) -> str:
    return (
        f"Deferred work noted on #{source_number} ({source_url}):\n\n"
        f"> {_truncate(request, 1500)}\n\n{COMMENT_MARKER}"
    )


def future_fix_summary_comment(created: tuple[tuple[int, str], ...]) -> str:
    lines = "\n".join(f"- #{number}: {title}" for number, title in created)
    return with_marker(f"**issuesmith** tracked deferred work as follow-up issues:\n\n{lines}")
