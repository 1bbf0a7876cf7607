from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import hashlib
import logging
import re
from typing import Final

from issuesmith.config import CommentMonitorConfig
from issuesmith.models import ActionableComment, ActionType, IssueComment
from issuesmith.observability import log_event
from issuesmith.prompts import COMMENT_MARKER
from issuesmith.state import StateStore


LOGGER = logging.getLogger("issuesmith.comment_classifier")

DEFAULT_KEYWORDS: Final[tuple[str, ...]] = (
    "fix",
    "change",
    "update",
    "modify",
    "correct",
    "improve",
    "please fix",
    "can you fix",
    "need to fix",
    "should fix",
    "change request",
    "requested changes",
    "please address",
)

KEYWORD_WEIGHT: Final[float] = 0.15
DIRECT_FIX_WEIGHT: Final[float] = 0.4
SUGGESTION_WEIGHT: Final[float] = 0.3
PROBLEM_WEIGHT: Final[float] = 0.25
QUESTION_WEIGHT: Final[float] = 0.15
NEGATIVE_WEIGHT: Final[float] = 0.2
CODE_SPAN_WEIGHT: Final[float] = 0.25
NIT_WEIGHT: Final[float] = 0.3
CONTINUITY_WEIGHT: Final[float] = 0.2
CONTINUITY_CAP: Final[float] = 0.4
REPLY_WEIGHT: Final[float] = 0.1
CLARIFICATION_CONFIDENCE: Final[float] = 0.4
_MAX_REQUEST_CHARS: Final[int] = 4000

_FUTURE_FIX = re.compile(
    r"\b(todo|fixme|future fix|fix (?:this |it )?later|later fix|address (?:this |it )?later|"
    r"temporary (?:fix|workaround|hack)|follow[- ]?up (?:issue|pr)|in a follow[- ]?up)\b",
    re.IGNORECASE,
)
_APPROVAL = re.compile(r"\b(lgtm|approved?|looks good to me|ship it)\b", re.IGNORECASE)
_DIRECT_FIX = re.compile(
    r"\b(please|can you|could you|need to|needs to|should|must)\s+"
    r"(fix|change|update|rename|remove|add|correct|handle|use)\b",
    re.IGNORECASE,
)
_SUGGESTION = re.compile(
    r"\b(consider|suggest(?:ion)?|might want to|would be better|how about|instead of|prefer)\b",
    re.IGNORECASE,
)
_PROBLEM = re.compile(
    r"\b(doesn't work|does not work|is broken|breaks|fails|failing|error|bug|crash(?:es)?|"
    r"wrong|incorrect|regression)\b",
    re.IGNORECASE,
)
_QUESTION = re.compile(r"\b(why|what|how|where|when|could|can|would|is)\b[^?]*\?", re.IGNORECASE)
_NEGATIVE = re.compile(
    r"\b(not (?:right|correct|what i)|this is wrong|revert|undo|don't like|shouldn't)\b",
    re.IGNORECASE,
)
_NIT = re.compile(r"\bnit(?:pick)?:", re.IGNORECASE)
_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`\n]+`")
_TOKEN = re.compile(r"[a-z0-9_]+")
_ACTIONABLE_TYPES: Final[frozenset[str]] = frozenset(
    {"fix", "feedback", "clarification", "future_fix"}
)


@dataclass(frozen=True)
class ClassifierContext:
    keywords: tuple[str, ...]
    own_logins: tuple[str, ...] = ()
    bot_logins: tuple[str, ...] = ()
    mention: str = "@issuesmith"
    previous_comments: tuple[IssueComment, ...] = ()
    context_window: int = 5


@dataclass(frozen=True)
class CommentScan:
    actionable: tuple[ActionableComment, ...]
    future_fixes: tuple[ActionableComment, ...]
    recorded_count: int
    duplicate_count: int


def classify(comment: IssueComment, context: ClassifierContext) -> ActionableComment:
    login = comment.user_login.strip().lower()
    if COMMENT_MARKER in comment.body or login in context.own_logins:
        return _ignore(comment)
    if comment.user_type == "Bot" or login in context.bot_logins or login.endswith("[bot]"):
        return _ignore(comment)

    body = comment.body
    lowered = body.lower()
    code_spans = _code_spans(body)
    score = 0.0
    fix_signal = False
    feedback_signal = False

    keyword_hits = _keyword_hits(lowered, context.keywords)
    if keyword_hits:
        score += KEYWORD_WEIGHT * keyword_hits
        fix_signal = True
    if _DIRECT_FIX.search(body):
        score += DIRECT_FIX_WEIGHT
        fix_signal = True
    if _PROBLEM.search(body):
        score += PROBLEM_WEIGHT
        fix_signal = True
    if _NEGATIVE.search(body):
        score += NEGATIVE_WEIGHT
        fix_signal = True
    if _NIT.search(body):
        score += NIT_WEIGHT
        fix_signal = True
    if _SUGGESTION.search(body):
        score += SUGGESTION_WEIGHT
        feedback_signal = True
    if code_spans:
        score += CODE_SPAN_WEIGHT
        feedback_signal = True
    question = bool(_QUESTION.search(body))
    if question:
        score += QUESTION_WEIGHT
    continuity_ids = _continuity_matches(context)
    score += min(CONTINUITY_WEIGHT * len(continuity_ids), CONTINUITY_CAP)
    if context.mention.lower() in lowered or _quotes_system(body, context):
        score += REPLY_WEIGHT
    confidence = round(min(score, 1.0), 4)

    request = "\n\n".join(code_spans) if code_spans else body.strip()
    request = request[:_MAX_REQUEST_CHARS]

    if _FUTURE_FIX.search(body):
        action: ActionType = "future_fix"
    elif _APPROVAL.search(body) and not fix_signal:
        return _ignore(comment)
    elif fix_signal:
        action = "fix"
    elif feedback_signal:
        action = "feedback"
    elif body.rstrip().endswith("?"):
        action = "clarification"
        confidence = max(confidence, CLARIFICATION_CONFIDENCE)
    elif confidence > 0:
        action = "feedback"
    else:
        action = "ignore"
    return ActionableComment(
        comment_id=comment.comment_id,
        action_type=action,
        confidence=confidence,
        extracted_request=request if action != "ignore" else "",
        context_comment_ids=continuity_ids,
    )


def is_actionable(result: ActionableComment, *, min_confidence: float) -> bool:
    if result.action_type == "future_fix":
        return True
    return result.action_type != "ignore" and result.confidence >= min_confidence


def token_set(text: str) -> frozenset[str]:
    return frozenset(token for token in _TOKEN.findall(text.lower()) if len(token) > 2)


def similarity(left: str, right: str) -> float:
    left_tokens = token_set(left)
    right_tokens = token_set(right)
    if not left_tokens or not right_tokens:
        return 0.0
    return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)


def content_hash(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class CommentMonitor:
    """Classifies unseen comments on one issue and records each exactly once."""

    def __init__(
        self,
        state: StateStore,
        config: CommentMonitorConfig,
        *,
        own_logins: tuple[str, ...] = (),
        bot_logins: tuple[str, ...] = (),
        mention: str = "@issuesmith",
    ) -> None:
        self._state = state
        self._config = config
        self._own_logins = tuple(login.lower() for login in own_logins)
        self._bot_logins = tuple(login.lower() for login in bot_logins)
        self._mention = mention
        self._keywords = DEFAULT_KEYWORDS + tuple(
            keyword for keyword in config.extra_keywords if keyword not in DEFAULT_KEYWORDS
        )

    def scan(
        self,
        *,
        repo_full_name: str,
        issue_number: int,
        comments: Sequence[IssueComment],
    ) -> CommentScan:
        if not self._config.enabled:
            return CommentScan(actionable=(), future_fixes=(), recorded_count=0, duplicate_count=0)

        ledger = {
            entry.comment_id: entry
            for entry in self._state.list_processed_comments(
                repo_full_name=repo_full_name, issue_number=issue_number
            )
        }
        ordered = sorted(comments, key=lambda item: (item.created_at, item.comment_id))
        surfaced_bodies: list[str] = []
        actionable: list[ActionableComment] = []
        future_fixes: list[ActionableComment] = []
        recorded = 0
        duplicates = 0

        for index, comment in enumerate(ordered):
            seen = ledger.get(comment.comment_id)
            if seen is not None:
                if seen.outcome in _ACTIONABLE_TYPES:
                    surfaced_bodies.append(comment.body)
                continue

            result = classify(
                comment,
                ClassifierContext(
                    keywords=self._keywords,
                    own_logins=self._own_logins,
                    bot_logins=self._bot_logins,
                    mention=self._mention,
                    previous_comments=tuple(ordered[:index]),
                    context_window=self._config.context_window,
                ),
            )
            surfaced = is_actionable(result, min_confidence=self._config.min_confidence)
            duplicate = surfaced and any(
                similarity(comment.body, earlier) >= self._config.similarity_threshold
                for earlier in surfaced_bodies
            )
            outcome = "duplicate" if duplicate else result.action_type
            if not surfaced and result.action_type != "ignore":
                # Below the confidence bar: recorded as ignore so it never re-triggers.
                outcome = "ignore"
            inserted = self._state.record_processed_comment(
                repo_full_name=repo_full_name,
                comment_id=comment.comment_id,
                issue_number=issue_number,
                content_hash=content_hash(comment.body),
                outcome=outcome,
                confidence=result.confidence,
            )
            if not inserted:
                continue
            recorded += 1
            if duplicate:
                duplicates += 1
                continue
            if not surfaced:
                continue
            surfaced_bodies.append(comment.body)
            if result.action_type == "future_fix":
                future_fixes.append(result)
            else:
                actionable.append(result)
            log_event(
                LOGGER,
                "actionable_comment_detected",
                repo_full_name=repo_full_name,
                issue_number=issue_number,
                comment_id=comment.comment_id,
                action_type=result.action_type,
                confidence=result.confidence,
            )

        return CommentScan(
            actionable=tuple(actionable),
            future_fixes=tuple(future_fixes),
            recorded_count=recorded,
            duplicate_count=duplicates,
        )


def _ignore(comment: IssueComment) -> ActionableComment:
    return ActionableComment(
        comment_id=comment.comment_id,
        action_type="ignore",
        confidence=1.0,
        extracted_request="",
    )


def _keyword_hits(lowered: str, keywords: tuple[str, ...]) -> int:
    hits = 0
    for keyword in keywords:
        if re.search(rf"\b{re.escape(keyword)}\b", lowered):
            hits += 1
    return hits


def _code_spans(body: str) -> list[str]:
    blocks = _CODE_BLOCK.findall(body)
    remainder = _CODE_BLOCK.sub(" ", body)
    return [*blocks, *_INLINE_CODE.findall(remainder)]


def _continuity_matches(context: ClassifierContext) -> tuple[int, ...]:
    if context.context_window <= 0:
        return ()
    recent = context.previous_comments[-context.context_window :]
    matched: list[int] = []
    for previous in recent:
        if COMMENT_MARKER in previous.body:
            continue
        if _DIRECT_FIX.search(previous.body) or _keyword_hits(
            previous.body.lower(), context.keywords
        ):
            matched.append(previous.comment_id)
    return tuple(matched)


def _quotes_system(body: str, context: ClassifierContext) -> bool:
    quoted = [line for line in body.splitlines() if line.startswith(">")]
    if not quoted:
        return False
    return any("issuesmith" in line.lower() for line in quoted) or any(
        COMMENT_MARKER in previous.body for previous in context.previous_comments[-1:]
    )
