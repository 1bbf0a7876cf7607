from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import json
from pathlib import Path
import sqlite3
import threading
from typing import Final, Literal, cast

from issuesmith.models import (
    JOB_STATUSES,
    MERGE_METHODS,
    AutoMergeSettings,
    CancelRequestRecord,
    CommentOutcome,
    ConflictAttemptOutcome,
    ConflictAttemptRecord,
    JobRecord,
    JobStatus,
    LearnedRule,
    MergeMethod,
    PullRequestAutoMergeOverride,
    RULE_KINDS,
    RuleKind,
)


_NOW: Final[str] = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

CLAIMABLE_STATUSES: Final[tuple[JobStatus, ...]] = ("pending", "waiting", "failed")

# Every legal edge of the job lifecycle. Anything else is rejected without writing.
ALLOWED_TRANSITIONS: Final[dict[JobStatus, frozenset[JobStatus]]] = {
    "pending": frozenset({"in-progress"}),
    "in-progress": frozenset({"done", "waiting", "failed", "cancelled", "pending"}),
    "waiting": frozenset({"in-progress"}),
    "failed": frozenset({"in-progress", "pending"}),
    "done": frozenset({"pending"}),
    "cancelled": frozenset(),
}

_ACTIONABLE_OUTCOMES: Final[tuple[str, ...]] = ("fix", "feedback", "clarification", "future_fix")

_JOB_COLUMNS: Final[str] = """
    job_id,
    repo_full_name,
    issue_number,
    issue_title,
    status,
    branch,
    pr_number,
    pr_url,
    error,
    force_new_branch,
    stale_recoveries,
    claimed_at,
    created_at,
    updated_at
"""

_RULE_COLUMNS: Final[str] = "rule_id, repo_full_name, kind, text, created_at"

_ATTEMPT_COLUMNS: Final[str] = """
    attempt_id,
    repo_full_name,
    pr_number,
    pr_title,
    conflicted_files_json,
    outcome,
    resolved_files_json,
    escalated_files_json,
    reason,
    duration_ms,
    created_at,
    updated_at
"""


class InvalidTransitionError(RuntimeError):
    def __init__(self, job_id: int, from_status: str, to_status: str, detail: str = "") -> None:
        message = f"Job {job_id} cannot move from {from_status!r} to {to_status!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status


class UnknownJobError(LookupError):
    pass


@dataclass(frozen=True)
class ProcessedComment:
    comment_id: int
    issue_number: int
    content_hash: str
    outcome: CommentOutcome
    confidence: float
    consumed: bool
    processed_at: str


@dataclass(frozen=True)
class StaleRecovery:
    job: JobRecord
    demoted_to: JobStatus


def is_transition_allowed(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    issue_title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'pending',
                    branch TEXT,
                    pr_number INTEGER,
                    pr_url TEXT,
                    error TEXT,
                    force_new_branch INTEGER NOT NULL DEFAULT 0,
                    stale_recoveries INTEGER NOT NULL DEFAULT 0,
                    claimed_at TEXT,
                    created_at TEXT NOT NULL DEFAULT ({_NOW}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW}),
                    UNIQUE (repo_full_name, issue_number)
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS repo_auto_merge_config (
                    repo_full_name TEXT PRIMARY KEY,
                    enabled INTEGER NOT NULL,
                    auto_merge_clean INTEGER NOT NULL,
                    auto_resolve_conflicts INTEGER NOT NULL,
                    merge_method TEXT NOT NULL,
                    stale_pr_days REAL NOT NULL,
                    max_resolution_attempts INTEGER NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT ({_NOW})
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS pr_auto_merge_config (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    enabled INTEGER NOT NULL,
                    merge_method TEXT,
                    updated_at TEXT NOT NULL DEFAULT ({_NOW}),
                    PRIMARY KEY (repo_full_name, pr_number)
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS processed_comments (
                    repo_full_name TEXT NOT NULL,
                    comment_id INTEGER NOT NULL,
                    issue_number INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    consumed INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT NOT NULL DEFAULT ({_NOW}),
                    PRIMARY KEY (repo_full_name, comment_id)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_processed_comments_issue
                ON processed_comments(repo_full_name, issue_number)
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS conflict_attempts (
                    attempt_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    pr_title TEXT NOT NULL DEFAULT '',
                    conflicted_files_json TEXT NOT NULL DEFAULT '[]',
                    outcome TEXT NOT NULL DEFAULT 'running',
                    resolved_files_json TEXT NOT NULL DEFAULT '[]',
                    escalated_files_json TEXT NOT NULL DEFAULT '[]',
                    reason TEXT,
                    duration_ms INTEGER,
                    created_at TEXT NOT NULL DEFAULT ({_NOW}),
                    updated_at TEXT NOT NULL DEFAULT ({_NOW})
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_conflict_attempts_pr
                ON conflict_attempts(repo_full_name, pr_number)
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS cancel_requests (
                    request_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id INTEGER,
                    force INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    result TEXT,
                    created_at TEXT NOT NULL DEFAULT ({_NOW})
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS learned_rules (
                    rule_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    kind TEXT NOT NULL CHECK (kind IN ('do', 'dont')),
                    text TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT ({_NOW})
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_learned_rules_repo
                ON learned_rules(repo_full_name)
                """
            )

    # Jobs

    def upsert_job(
        self, *, repo_full_name: str, issue_number: int, issue_title: str
    ) -> JobRecord:
        """Create the job for an issue if missing, then return the stored row."""
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jobs(repo_full_name, issue_number, issue_title)
                VALUES(?, ?, ?)
                ON CONFLICT(repo_full_name, issue_number) DO NOTHING
                """,
                (repo_full_name, issue_number, issue_title),
            )
            conn.execute(
                """
                UPDATE jobs SET issue_title = ?
                WHERE repo_full_name = ? AND issue_number = ? AND issue_title != ?
                """,
                (issue_title, repo_full_name, issue_number, issue_title),
            )
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE repo_full_name = ? AND issue_number = ?",
                (repo_full_name, issue_number),
            ).fetchone()
        if row is None:
            raise RuntimeError("jobs row disappeared after upsert")
        return _parse_job_row(row)

    def get_job(self, job_id: int) -> JobRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        return None if row is None else _parse_job_row(row)

    def require_job(self, job_id: int) -> JobRecord:
        job = self.get_job(job_id)
        if job is None:
            raise UnknownJobError(f"Job {job_id} does not exist")
        return job

    def get_job_for_issue(self, *, repo_full_name: str, issue_number: int) -> JobRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE repo_full_name = ? AND issue_number = ?",
                (repo_full_name, issue_number),
            ).fetchone()
        return None if row is None else _parse_job_row(row)

    def find_branch_owner(self, *, repo_full_name: str, branch: str) -> JobRecord | None:
        """The earliest job working on branch; later jobs only joined it."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE repo_full_name = ? AND branch = ?
                ORDER BY job_id ASC
                LIMIT 1
                """,
                (repo_full_name, branch),
            ).fetchone()
        return None if row is None else _parse_job_row(row)

    def current_timestamp(self) -> str:
        """Database clock in the same format as the updated_at columns."""
        with self._lock, self._connect() as conn:
            row = conn.execute(f"SELECT {_NOW}").fetchone()
        return str(row[0])

    def list_jobs(
        self,
        *,
        repo_full_name: str | None = None,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = 100,
    ) -> tuple[JobRecord, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if repo_full_name is not None:
            clauses.append("repo_full_name = ?")
            params.append(repo_full_name)
        if statuses is not None:
            status_list = list(statuses)
            if not status_list:
                return ()
            clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                {where}
                ORDER BY updated_at DESC, job_id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return tuple(_parse_job_row(row) for row in rows)

    def claim_job(self, job_id: int) -> bool:
        """Atomically flip a claimable job to in-progress.

        Returns False when the job is already claimed or in a non-claimable state.
        """
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = 'in-progress',
                    claimed_at = {_NOW},
                    error = NULL,
                    updated_at = {_NOW}
                WHERE job_id = ? AND status IN ('pending', 'waiting', 'failed')
                """,
                (job_id,),
            )
            return cursor.rowcount == 1

    def transition_job(
        self,
        job_id: int,
        to_status: JobStatus,
        *,
        error: str | None = None,
        branch: str | None = None,
        pr_number: int | None = None,
        pr_url: str | None = None,
    ) -> JobRecord:
        if to_status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {to_status!r}")
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise UnknownJobError(f"Job {job_id} does not exist")
            current = _parse_job_row(row)
            if not is_transition_allowed(current.status, to_status):
                raise InvalidTransitionError(job_id, current.status, to_status)
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?,
                    error = ?,
                    branch = COALESCE(?, branch),
                    pr_number = COALESCE(?, pr_number),
                    pr_url = COALESCE(?, pr_url),
                    claimed_at = CASE WHEN ? = 'in-progress' THEN {_NOW} ELSE claimed_at END,
                    updated_at = {_NOW}
                WHERE job_id = ? AND status = ?
                """,
                (
                    to_status,
                    error,
                    branch,
                    pr_number,
                    pr_url,
                    to_status,
                    job_id,
                    current.status,
                ),
            )
            if cursor.rowcount != 1:
                raise InvalidTransitionError(
                    job_id, current.status, to_status, "status changed concurrently"
                )
            updated = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        if updated is None:
            raise RuntimeError("jobs row disappeared after transition")
        return _parse_job_row(updated)

    def set_job_branch(self, job_id: int, branch: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE jobs SET branch = ?, updated_at = {_NOW} WHERE job_id = ?",
                (branch, job_id),
            )

    def set_force_new_branch(self, job_id: int, force_new_branch: bool) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE jobs SET force_new_branch = ?, updated_at = {_NOW} WHERE job_id = ?",
                (1 if force_new_branch else 0, job_id),
            )

    def touch_job(self, job_id: int) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE jobs SET updated_at = {_NOW} WHERE job_id = ? AND status = 'in-progress'",
                (job_id,),
            )

    def reset_job(self, job_id: int) -> JobRecord:
        """Operator reset of a failed or done job back to pending."""
        return self.transition_job(job_id, "pending")

    def recover_stale_jobs(
        self,
        *,
        stale_after_seconds: int,
        max_stale_recoveries: int,
        exclude_job_ids: Iterable[int] = (),
    ) -> tuple[StaleRecovery, ...]:
        """Demote in-progress jobs whose owner is presumed dead.

        Jobs stale fewer than max_stale_recoveries times go back to pending;
        repeat offenders are failed so they stop cycling.
        """
        excluded = set(exclude_job_ids)
        recoveries: list[StaleRecovery] = []
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                WHERE status = 'in-progress'
                  AND updated_at < strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
                ORDER BY job_id ASC
                """,
                (f"-{stale_after_seconds} seconds",),
            ).fetchall()
            for row in rows:
                job = _parse_job_row(row)
                if job.job_id in excluded:
                    continue
                if job.stale_recoveries + 1 >= max_stale_recoveries:
                    target: JobStatus = "failed"
                    error: str | None = (
                        f"Job was left in-progress by a dead process "
                        f"{job.stale_recoveries + 1} times"
                    )
                else:
                    target = "pending"
                    error = None
                cursor = conn.execute(
                    f"""
                    UPDATE jobs
                    SET status = ?,
                        error = ?,
                        stale_recoveries = stale_recoveries + 1,
                        updated_at = {_NOW}
                    WHERE job_id = ? AND status = 'in-progress'
                    """,
                    (target, error, job.job_id),
                )
                if cursor.rowcount == 1:
                    recoveries.append(StaleRecovery(job=job, demoted_to=target))
        return tuple(recoveries)

    # Auto-merge policy

    def get_repo_auto_merge(self, repo_full_name: str) -> AutoMergeSettings | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    enabled,
                    auto_merge_clean,
                    auto_resolve_conflicts,
                    merge_method,
                    stale_pr_days,
                    max_resolution_attempts
                FROM repo_auto_merge_config
                WHERE repo_full_name = ?
                """,
                (repo_full_name,),
            ).fetchone()
        if row is None:
            return None
        enabled, clean, resolve, method, stale_days, max_attempts = row
        if not isinstance(stale_days, int | float) or not isinstance(max_attempts, int):
            raise RuntimeError("Invalid repo_auto_merge_config row")
        return AutoMergeSettings(
            enabled=bool(enabled),
            auto_merge_clean=bool(clean),
            auto_resolve_conflicts=bool(resolve),
            merge_method=_parse_merge_method(method),
            stale_pr_days=float(stale_days),
            max_resolution_attempts=max_attempts,
        )

    def set_repo_auto_merge(self, repo_full_name: str, settings: AutoMergeSettings) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO repo_auto_merge_config(
                    repo_full_name,
                    enabled,
                    auto_merge_clean,
                    auto_resolve_conflicts,
                    merge_method,
                    stale_pr_days,
                    max_resolution_attempts
                )
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_full_name) DO UPDATE SET
                    enabled=excluded.enabled,
                    auto_merge_clean=excluded.auto_merge_clean,
                    auto_resolve_conflicts=excluded.auto_resolve_conflicts,
                    merge_method=excluded.merge_method,
                    stale_pr_days=excluded.stale_pr_days,
                    max_resolution_attempts=excluded.max_resolution_attempts,
                    updated_at={_NOW}
                """,
                (
                    repo_full_name,
                    int(settings.enabled),
                    int(settings.auto_merge_clean),
                    int(settings.auto_resolve_conflicts),
                    settings.merge_method,
                    settings.stale_pr_days,
                    settings.max_resolution_attempts,
                ),
            )

    def get_pr_auto_merge(
        self, *, repo_full_name: str, pr_number: int
    ) -> PullRequestAutoMergeOverride | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT enabled, merge_method, updated_at
                FROM pr_auto_merge_config
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (repo_full_name, pr_number),
            ).fetchone()
        if row is None:
            return None
        enabled, method, updated_at = row
        if not isinstance(updated_at, str):
            raise RuntimeError("Invalid pr_auto_merge_config row")
        return PullRequestAutoMergeOverride(
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            enabled=bool(enabled),
            merge_method=None if method is None else _parse_merge_method(method),
            updated_at=updated_at,
        )

    def set_pr_auto_merge(
        self,
        *,
        repo_full_name: str,
        pr_number: int,
        enabled: bool,
        merge_method: MergeMethod | None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO pr_auto_merge_config(repo_full_name, pr_number, enabled, merge_method)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(repo_full_name, pr_number) DO UPDATE SET
                    enabled=excluded.enabled,
                    merge_method=excluded.merge_method,
                    updated_at={_NOW}
                """,
                (repo_full_name, pr_number, int(enabled), merge_method),
            )

    def clear_pr_auto_merge(self, *, repo_full_name: str, pr_number: int) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM pr_auto_merge_config WHERE repo_full_name = ? AND pr_number = ?",
                (repo_full_name, pr_number),
            )
            return cursor.rowcount > 0

    # Processed-comment ledger

    def record_processed_comment(
        self,
        *,
        repo_full_name: str,
        comment_id: int,
        issue_number: int,
        content_hash: str,
        outcome: CommentOutcome,
        confidence: float,
    ) -> bool:
        """Record a comment once. Returns False if the id was already in the ledger."""
        consumed = 0 if outcome in _ACTIONABLE_OUTCOMES else 1
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO processed_comments(
                    repo_full_name,
                    comment_id,
                    issue_number,
                    content_hash,
                    outcome,
                    confidence,
                    consumed
                )
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    repo_full_name,
                    comment_id,
                    issue_number,
                    content_hash,
                    outcome,
                    confidence,
                    consumed,
                ),
            )
            return cursor.rowcount == 1

    def list_processed_comments(
        self, *, repo_full_name: str, issue_number: int
    ) -> tuple[ProcessedComment, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    comment_id,
                    issue_number,
                    content_hash,
                    outcome,
                    confidence,
                    consumed,
                    processed_at
                FROM processed_comments
                WHERE repo_full_name = ? AND issue_number = ?
                ORDER BY comment_id ASC
                """,
                (repo_full_name, issue_number),
            ).fetchall()
        return tuple(_parse_processed_comment_row(row) for row in rows)

    def list_unconsumed_actionable_comment_ids(
        self, *, repo_full_name: str, issue_number: int
    ) -> tuple[int, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT comment_id
                FROM processed_comments
                WHERE repo_full_name = ?
                  AND issue_number = ?
                  AND consumed = 0
                  AND outcome IN ('fix', 'feedback', 'clarification')
                ORDER BY comment_id ASC
                """,
                (repo_full_name, issue_number),
            ).fetchall()
        return tuple(int(row[0]) for row in rows)

    def mark_comments_consumed(self, *, repo_full_name: str, comment_ids: Iterable[int]) -> None:
        ids = list(comment_ids)
        if not ids:
            return
        with self._lock, self._connect() as conn:
            conn.executemany(
                """
                UPDATE processed_comments SET consumed = 1
                WHERE repo_full_name = ? AND comment_id = ?
                """,
                [(repo_full_name, comment_id) for comment_id in ids],
            )

    # Conflict-resolution attempts

    def create_conflict_attempt(
        self,
        *,
        repo_full_name: str,
        pr_number: int,
        pr_title: str,
        conflicted_files: Iterable[str],
    ) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO conflict_attempts(
                    repo_full_name,
                    pr_number,
                    pr_title,
                    conflicted_files_json
                )
                VALUES(?, ?, ?, ?)
                """,
                (repo_full_name, pr_number, pr_title, json.dumps(list(conflicted_files))),
            )
            attempt_id = cursor.lastrowid
        if attempt_id is None:
            raise RuntimeError("conflict_attempts insert returned no row id")
        return attempt_id

    def finish_conflict_attempt(
        self,
        attempt_id: int,
        *,
        outcome: ConflictAttemptOutcome,
        resolved_files: Iterable[str] = (),
        escalated_files: Iterable[str] = (),
        reason: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        if outcome == "running":
            raise ValueError("finish_conflict_attempt requires a terminal outcome")
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE conflict_attempts
                SET outcome = ?,
                    resolved_files_json = ?,
                    escalated_files_json = ?,
                    reason = ?,
                    duration_ms = ?,
                    updated_at = {_NOW}
                WHERE attempt_id = ? AND outcome = 'running'
                """,
                (
                    outcome,
                    json.dumps(list(resolved_files)),
                    json.dumps(list(escalated_files)),
                    reason,
                    duration_ms,
                    attempt_id,
                ),
            )
            if cursor.rowcount != 1:
                raise RuntimeError(f"Conflict attempt {attempt_id} is not running")

    def count_failed_conflict_attempts(self, *, repo_full_name: str, pr_number: int) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*)
                FROM conflict_attempts
                WHERE repo_full_name = ? AND pr_number = ? AND outcome = 'failed'
                """,
                (repo_full_name, pr_number),
            ).fetchone()
        return 0 if row is None else int(row[0])

    def has_escalated(self, *, repo_full_name: str, pr_number: int) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM conflict_attempts
                WHERE repo_full_name = ? AND pr_number = ? AND outcome = 'escalated'
                LIMIT 1
                """,
                (repo_full_name, pr_number),
            ).fetchone()
        return row is not None

    def list_conflict_attempts(
        self,
        *,
        repo_full_name: str | None = None,
        pr_number: int | None = None,
        limit: int = 50,
    ) -> tuple[ConflictAttemptRecord, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if repo_full_name is not None:
            clauses.append("repo_full_name = ?")
            params.append(repo_full_name)
        if pr_number is not None:
            clauses.append("pr_number = ?")
            params.append(pr_number)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ATTEMPT_COLUMNS}
                FROM conflict_attempts
                {where}
                ORDER BY attempt_id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return tuple(_parse_attempt_row(row) for row in rows)

    # Learned rules

    def add_rule(self, *, repo_full_name: str, kind: RuleKind, text: str) -> LearnedRule:
        if kind not in RULE_KINDS:
            raise ValueError(f"Unknown rule kind {kind!r}; expected one of: do, dont")
        cleaned = " ".join(text.split())
        if not cleaned:
            raise ValueError("Rule text must be non-empty")
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO learned_rules(repo_full_name, kind, text) VALUES(?, ?, ?)",
                (repo_full_name, kind, cleaned),
            )
            row = conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM learned_rules WHERE rule_id = ?",
                (cursor.lastrowid,),
            ).fetchone()
        if row is None:
            raise RuntimeError("learned_rules row disappeared after insert")
        return _parse_rule_row(row)

    def list_rules(self, repo_full_name: str) -> tuple[LearnedRule, ...]:
        """Rules for one repo: every do before every don't, oldest first within each."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_RULE_COLUMNS}
                FROM learned_rules
                WHERE repo_full_name = ?
                ORDER BY kind ASC, rule_id ASC
                """,
                (repo_full_name,),
            ).fetchall()
        return tuple(_parse_rule_row(row) for row in rows)

    def remove_rule(self, *, repo_full_name: str, rule_id: int) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM learned_rules WHERE rule_id = ? AND repo_full_name = ?",
                (rule_id, repo_full_name),
            )
        return cursor.rowcount > 0

    # Cross-process cancellation requests

    def request_cancel(self, *, job_id: int | None, force: bool) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO cancel_requests(job_id, force) VALUES(?, ?)",
                (job_id, int(force)),
            )
            request_id = cursor.lastrowid
        if request_id is None:
            raise RuntimeError("cancel_requests insert returned no row id")
        return request_id

    def list_pending_cancel_requests(self) -> tuple[CancelRequestRecord, ...]:
        return self._select_cancel_requests("WHERE status = 'pending' ORDER BY request_id ASC", ())

    def get_cancel_request(self, request_id: int) -> CancelRequestRecord | None:
        found = self._select_cancel_requests("WHERE request_id = ?", (request_id,))
        return found[0] if found else None

    def finish_cancel_request(self, request_id: int, *, applied: bool, result: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE cancel_requests SET status = ?, result = ?
                WHERE request_id = ? AND status = 'pending'
                """,
                ("applied" if applied else "rejected", result, request_id),
            )

    def _select_cancel_requests(
        self, tail: str, params: tuple[object, ...]
    ) -> tuple[CancelRequestRecord, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT request_id, job_id, force, status, result, created_at
                FROM cancel_requests
                {tail}
                """,
                params,
            ).fetchall()
        return tuple(_parse_cancel_request_row(row) for row in rows)


def _parse_job_row(row: tuple[object, ...]) -> JobRecord:
    if len(row) != 14:
        raise RuntimeError("Invalid jobs row width")
    (
        job_id,
        repo_full_name,
        issue_number,
        issue_title,
        status,
        branch,
        pr_number,
        pr_url,
        error,
        force_new_branch,
        stale_recoveries,
        claimed_at,
        created_at,
        updated_at,
    ) = row
    if not isinstance(job_id, int):
        raise RuntimeError("Invalid job_id value stored in jobs")
    if not isinstance(repo_full_name, str):
        raise RuntimeError("Invalid repo_full_name value stored in jobs")
    if not isinstance(issue_number, int):
        raise RuntimeError("Invalid issue_number value stored in jobs")
    if not isinstance(issue_title, str):
        raise RuntimeError("Invalid issue_title value stored in jobs")
    if branch is not None and not isinstance(branch, str):
        raise RuntimeError("Invalid branch value stored in jobs")
    if pr_number is not None and not isinstance(pr_number, int):
        raise RuntimeError("Invalid pr_number value stored in jobs")
    if pr_url is not None and not isinstance(pr_url, str):
        raise RuntimeError("Invalid pr_url value stored in jobs")
    if error is not None and not isinstance(error, str):
        raise RuntimeError("Invalid error value stored in jobs")
    if not isinstance(stale_recoveries, int):
        raise RuntimeError("Invalid stale_recoveries value stored in jobs")
    if claimed_at is not None and not isinstance(claimed_at, str):
        raise RuntimeError("Invalid claimed_at value stored in jobs")
    if not isinstance(created_at, str) or not isinstance(updated_at, str):
        raise RuntimeError("Invalid timestamps stored in jobs")
    return JobRecord(
        job_id=job_id,
        repo_full_name=repo_full_name,
        issue_number=issue_number,
        issue_title=issue_title,
        status=_parse_job_status(status),
        branch=branch,
        pr_number=pr_number,
        pr_url=pr_url,
        error=error,
        force_new_branch=bool(force_new_branch),
        stale_recoveries=stale_recoveries,
        claimed_at=claimed_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _parse_attempt_row(row: tuple[object, ...]) -> ConflictAttemptRecord:
    (
        attempt_id,
        repo_full_name,
        pr_number,
        pr_title,
        conflicted_json,
        outcome,
        resolved_json,
        escalated_json,
        reason,
        duration_ms,
        created_at,
        updated_at,
    ) = row
    if not isinstance(attempt_id, int) or not isinstance(pr_number, int):
        raise RuntimeError("Invalid identifiers stored in conflict_attempts")
    if not isinstance(repo_full_name, str) or not isinstance(pr_title, str):
        raise RuntimeError("Invalid text values stored in conflict_attempts")
    if outcome not in {"running", "success", "failed", "escalated"}:
        raise RuntimeError(f"Invalid outcome stored in conflict_attempts: {outcome!r}")
    if reason is not None and not isinstance(reason, str):
        raise RuntimeError("Invalid reason value stored in conflict_attempts")
    if duration_ms is not None and not isinstance(duration_ms, int):
        raise RuntimeError("Invalid duration_ms value stored in conflict_attempts")
    if not isinstance(created_at, str) or not isinstance(updated_at, str):
        raise RuntimeError("Invalid timestamps stored in conflict_attempts")
    return ConflictAttemptRecord(
        attempt_id=attempt_id,
        repo_full_name=repo_full_name,
        pr_number=pr_number,
        pr_title=pr_title,
        conflicted_files=_parse_path_list(conflicted_json),
        outcome=cast(ConflictAttemptOutcome, outcome),
        resolved_files=_parse_path_list(resolved_json),
        escalated_files=_parse_path_list(escalated_json),
        reason=reason,
        duration_ms=duration_ms,
        created_at=created_at,
        updated_at=updated_at,
    )


def _parse_processed_comment_row(row: tuple[object, ...]) -> ProcessedComment:
    comment_id, issue_number, content_hash, outcome, confidence, consumed, processed_at = row
    if not isinstance(comment_id, int) or not isinstance(issue_number, int):
        raise RuntimeError("Invalid identifiers stored in processed_comments")
    if not isinstance(content_hash, str) or not isinstance(processed_at, str):
        raise RuntimeError("Invalid text values stored in processed_comments")
    if outcome not in {*_ACTIONABLE_OUTCOMES, "ignore", "duplicate"}:
        raise RuntimeError(f"Invalid outcome stored in processed_comments: {outcome!r}")
    if not isinstance(confidence, int | float):
        raise RuntimeError("Invalid confidence value stored in processed_comments")
    return ProcessedComment(
        comment_id=comment_id,
        issue_number=issue_number,
        content_hash=content_hash,
        outcome=cast(CommentOutcome, outcome),
        confidence=float(confidence),
        consumed=bool(consumed),
        processed_at=processed_at,
    )


def _parse_cancel_request_row(row: tuple[object, ...]) -> CancelRequestRecord:
    request_id, job_id, force, status, result, created_at = row
    if not isinstance(request_id, int):
        raise RuntimeError("Invalid request_id stored in cancel_requests")
    if job_id is not None and not isinstance(job_id, int):
        raise RuntimeError("Invalid job_id stored in cancel_requests")
    if status not in {"pending", "applied", "rejected"}:
        raise RuntimeError(f"Invalid status stored in cancel_requests: {status!r}")
    if result is not None and not isinstance(result, str):
        raise RuntimeError("Invalid result stored in cancel_requests")
    if not isinstance(created_at, str):
        raise RuntimeError("Invalid created_at stored in cancel_requests")
    return CancelRequestRecord(
        request_id=request_id,
        job_id=job_id,
        force=bool(force),
        status=cast(Literal["pending", "applied", "rejected"], status),
        result=result,
        created_at=created_at,
    )


def _parse_rule_row(row: tuple[object, ...]) -> LearnedRule:
    rule_id, repo_full_name, kind, text, created_at = row
    if not isinstance(rule_id, int):
        raise RuntimeError("Invalid rule_id stored in learned_rules")
    if kind not in RULE_KINDS:
        raise RuntimeError(f"Invalid kind stored in learned_rules: {kind!r}")
    if not isinstance(repo_full_name, str) or not isinstance(text, str):
        raise RuntimeError("Invalid text stored in learned_rules")
    if not isinstance(created_at, str):
        raise RuntimeError("Invalid created_at stored in learned_rules")
    return LearnedRule(
        rule_id=rule_id,
        repo_full_name=repo_full_name,
        kind=cast(RuleKind, kind),
        text=text,
        created_at=created_at,
    )


def _parse_path_list(value: object) -> tuple[str, ...]:
    if not isinstance(value, str):
        raise RuntimeError("Invalid JSON path list stored in state")
    decoded = json.loads(value)
    if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
        raise RuntimeError("Invalid JSON path list stored in state")
    return tuple(decoded)


def _parse_job_status(value: object) -> JobStatus:
    if value not in JOB_STATUSES:
        raise RuntimeError(f"Invalid job status stored in state: {value!r}")
    return cast(JobStatus, value)


def _parse_merge_method(value: object) -> MergeMethod:
    if value not in MERGE_METHODS:
        raise RuntimeError(f"Invalid merge method stored in state: {value!r}")
    return cast(MergeMethod, value)
