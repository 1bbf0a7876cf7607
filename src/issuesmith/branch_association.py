from __future__ import annotations

from collections.abc import Callable
import json
import logging
import re
from typing import cast

from issuesmith.models import ActiveBranch, AssociationDecision, Issue
from issuesmith.observability import log_event, log_warning
from issuesmith.prompts import build_association_prompt


LOGGER = logging.getLogger("issuesmith.branch_association")

BRANCH_PREFIX = "work/"
_MAX_SLUG_LEN = 40
_MAX_REPLY_CHARS = 20_000
_MAX_REASON_CHARS = 500
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
_JSON_OBJECT = re.compile(r"\{[^{}]{0,4000}\}", re.DOTALL)

AssociationOracle = Callable[[str], str]


def slugify(text: str) -> str:
    slug = _SLUG_STRIP.sub("-", text.lower()).strip("-")
    return slug[:_MAX_SLUG_LEN].strip("-") or "issue"


def issue_branch_name(issue_number: int, title: str) -> str:
    return f"{BRANCH_PREFIX}issue-{issue_number}-{slugify(title)}"


class BranchAssociationResolver:
    """Decide whether a new issue joins an active branch or gets its own.

    The oracle is consulted only when active branches exist. Every failure
    mode falls back to CREATE_NEW.
    """

    def __init__(self, oracle: AssociationOracle) -> None:
        self._oracle = oracle

    def resolve(
        self, issue: Issue, active_branches: tuple[ActiveBranch, ...]
    ) -> AssociationDecision:
        if not active_branches:
            return _create_new("No active branches.")

        prompt = build_association_prompt(issue=issue, active_branches=active_branches)
        try:
            reply = self._oracle(prompt)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "branch_association_oracle_failed",
                issue_number=issue.number,
                error_type=type(exc).__name__,
            )
            return _create_new(f"Association oracle failed ({type(exc).__name__}).")

        decision = parse_association_reply(reply, {branch.branch for branch in active_branches})
        log_event(
            LOGGER,
            "branch_association_decided",
            issue_number=issue.number,
            action=decision.action,
            branch=decision.branch,
            reason=decision.reason,
        )
        return decision


def parse_association_reply(reply: str, known_branches: set[str]) -> AssociationDecision:
    payload = _extract_json_object(reply[:_MAX_REPLY_CHARS])
    if payload is None:
        return _create_new("Association reply was not a JSON object.")

    action = payload.get("action")
    reason_value = payload.get("reason")
    reason = reason_value.strip()[:_MAX_REASON_CHARS] if isinstance(reason_value, str) else ""
    if action == "CREATE_NEW":
        return AssociationDecision(action="CREATE_NEW", branch=None, reason=reason or "New work.")
    if action != "JOIN":
        return _create_new(f"Unknown association action {action!r}.")

    branch = payload.get("branch", payload.get("branchName"))
    if not isinstance(branch, str) or branch.strip() not in known_branches:
        return _create_new("Association named a branch that is not active.")
    return AssociationDecision(
        action="JOIN",
        branch=branch.strip(),
        reason=reason or "Related to an active branch.",
    )


def _create_new(reason: str) -> AssociationDecision:
    return AssociationDecision(action="CREATE_NEW", branch=None, reason=reason)


def _extract_json_object(reply: str) -> dict[str, object] | None:
    text = reply.strip()
    if text.startswith("```"):
        lines = text.splitlines()[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    candidates = [text]
    candidates.extend(match.group(0) for match in _JSON_OBJECT.finditer(text))
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and all(isinstance(key, str) for key in payload):
            return cast(dict[str, object], payload)
    return None
