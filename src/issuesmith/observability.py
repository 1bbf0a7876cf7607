"""Structured ``event=<name> key=value`` logging shared by the daemon and the CLI."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from datetime import date, datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO


LOGGER_NAME: Final[str] = "issuesmith"
LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_FIELD_LIMIT: Final[int] = 120
# Visible in "low" verbosity. Warnings are always visible.
_MILESTONES: Final[frozenset[str]] = frozenset(
    {
        "job_claimed",
        "job_finished",
        "job_cancelled",
        "job_reactivated",
        "stale_jobs_recovered",
        "branch_association_decided",
        "agent_invocation_started",
        "agent_invocation_finished",
        "github_pr_created",
        "conflict_attempt_finished",
        "conflict_escalated",
        "auto_merge_enabled",
        "pull_request_merged",
        "actionable_comment_detected",
        "task_cancel_requested",
        "workspace_sweep_finished",
    }
)

Verbosity = Literal["low", "high"]


def configure_logging(verbose: bool | str | None, *, state_dir: Path | None = None) -> None:
    """Reset the package logger; safe to call repeatedly."""
    verbosity = _parse_verbosity(verbose)
    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = False
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    if verbosity is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    for handler in _handlers(state_dir):
        handler.setFormatter(logging.Formatter(LINE_FORMAT))
        if verbosity == "low":
            handler.addFilter(_MilestoneFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def log_warning(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields))


def format_event(event: str, fields: Mapping[str, object]) -> str:
    rendered = [f"event={_render(event)}"]
    rendered.extend(f"{key}={_render(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


def _render(value: object) -> str:
    text = _plain(value)
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _plain(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float | Path):
        return str(value)
    if isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _FIELD_LIMIT:
            text = text[:_FIELD_LIMIT] + "..."
        return text or "<empty>"
    if isinstance(value, tuple | list):
        return ",".join(_plain(item) for item in value) or "<empty>"
    return f"<{type(value).__name__}>"


def _parse_verbosity(verbose: bool | str | None) -> Verbosity | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode == "low":
        return "low"
    if mode == "high":
        return "high"
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _handlers(state_dir: Path | None) -> Iterator[logging.Handler]:
    yield logging.StreamHandler(sys.stderr)
    if state_dir is not None:
        yield _DailyLogHandler(state_dir / "logs")


def _event_name(message: str) -> str:
    head = message.partition(" ")[0]
    return head.removeprefix("event=") if head.startswith("event=") else ""


class _MilestoneFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.WARNING or _event_name(record.getMessage()) in _MILESTONES


class _DailyLogHandler(logging.Handler):
    """Appends to ``<logs_dir>/<UTC date>.log``; a new file starts at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        super().__init__()
        self.logs_dir = logs_dir
        self._day: date | None = None
        self._file: TextIO | None = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            handle = self._open_for(datetime.now(timezone.utc).date())
            handle.write(line + "\n")
            handle.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._release()
        finally:
            self.release()
        super().close()

    def _open_for(self, day: date) -> TextIO:
        if self._file is None or self._day != day:
            self._release()
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            self._file = (self.logs_dir / f"{day.isoformat()}.log").open("a", encoding="utf-8")
            self._day = day
        return self._file

    def _release(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
