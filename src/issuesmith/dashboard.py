from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import time

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from issuesmith.models import ConflictAttemptRecord, JobRecord
from issuesmith.state import StateStore


_ERROR_MAX_CHARS = 80


@dataclass(frozen=True)
class RunningJobRow:
    job_id: int
    repo_full_name: str
    issue_number: int
    branch: str | None
    claimed_at: str | None
    elapsed_seconds: float


@dataclass(frozen=True)
class DashboardSnapshot:
    running: tuple[RunningJobRow, ...]
    recent_jobs: tuple[JobRecord, ...]
    conflict_attempts: tuple[ConflictAttemptRecord, ...]
    status_counts: tuple[tuple[str, int], ...]
    repos: tuple[str, ...]


def load_snapshot(
    state: StateStore,
    repo_filter: str | None,
    *,
    now: float,
    limit: int = 100,
) -> DashboardSnapshot:
    jobs = state.list_jobs(repo_full_name=repo_filter, limit=limit)
    running = tuple(
        RunningJobRow(
            job_id=job.job_id,
            repo_full_name=job.repo_full_name,
            issue_number=job.issue_number,
            branch=job.branch,
            claimed_at=job.claimed_at,
            elapsed_seconds=elapsed_since(job.claimed_at, now=now),
        )
        for job in state.list_jobs(
            repo_full_name=repo_filter, statuses=("in-progress",), limit=limit
        )
    )
    counts: dict[str, int] = {}
    for job in jobs:
        counts[job.status] = counts.get(job.status, 0) + 1
    all_repos = {job.repo_full_name for job in state.list_jobs(limit=1000)}
    return DashboardSnapshot(
        running=running,
        recent_jobs=tuple(job for job in jobs if job.status != "in-progress"),
        conflict_attempts=state.list_conflict_attempts(repo_full_name=repo_filter, limit=limit),
        status_counts=tuple(sorted(counts.items())),
        repos=tuple(sorted(all_repos)),
    )


class DashboardApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_repo_filter", "Repo Filter"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, db_path: Path, refresh_seconds: int = 2, row_limit: int = 100) -> None:
        super().__init__()
        self._state = StateStore(db_path)
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._repo_filter: str | None = None
        self._snapshot: DashboardSnapshot | None = None

    @property
    def snapshot(self) -> DashboardSnapshot | None:
        return self._snapshot

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Running Jobs", classes="panel-title")
            yield DataTable(id="running-table")
            yield Static("Recent Jobs", classes="panel-title")
            yield DataTable(id="jobs-table")
            yield Static("Conflict Resolution Attempts", classes="panel-title")
            yield DataTable(id="conflicts-table")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#running-table", DataTable).add_columns(
            "Job", "Repo", "Issue", "Branch", "Claimed", "Elapsed"
        )
        self.query_one("#jobs-table", DataTable).add_columns(
            "Job", "Repo", "Issue", "Status", "Branch", "PR", "Updated", "Error"
        )
        self.query_one("#conflicts-table", DataTable).add_columns(
            "Attempt", "Repo", "PR", "Outcome", "Files", "Duration", "Reason"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_repo_filter(self) -> None:
        repos = self._snapshot.repos if self._snapshot is not None else ()
        self._repo_filter = next_repo_filter(self._repo_filter, repos)
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def refresh_data(self) -> None:
        snapshot = load_snapshot(
            self._state, self._repo_filter, now=time.time(), limit=self._row_limit
        )
        self._snapshot = snapshot
        self.query_one("#summary", Static).update(
            summary_text(snapshot, repo_filter=self._repo_filter)
        )

        running = self.query_one("#running-table", DataTable)
        running.clear(columns=False)
        for row in snapshot.running:
            running.add_row(
                str(row.job_id),
                row.repo_full_name,
                str(row.issue_number),
                row.branch or "-",
                row.claimed_at or "-",
                render_seconds(row.elapsed_seconds),
            )

        jobs = self.query_one("#jobs-table", DataTable)
        jobs.clear(columns=False)
        for job in snapshot.recent_jobs:
            jobs.add_row(
                str(job.job_id),
                job.repo_full_name,
                str(job.issue_number),
                job.status,
                job.branch or "-",
                str(job.pr_number) if job.pr_number is not None else "-",
                job.updated_at,
                _snippet(job.error),
            )

        conflicts = self.query_one("#conflicts-table", DataTable)
        conflicts.clear(columns=False)
        for attempt in snapshot.conflict_attempts:
            conflicts.add_row(
                str(attempt.attempt_id),
                attempt.repo_full_name,
                str(attempt.pr_number),
                attempt.outcome,
                str(len(attempt.conflicted_files)),
                render_seconds((attempt.duration_ms or 0) / 1000.0),
                _snippet(attempt.reason),
            )


def run_dashboard(*, db_path: Path, refresh_seconds: int = 2) -> None:
    DashboardApp(db_path=db_path, refresh_seconds=refresh_seconds).run()


def summary_text(snapshot: DashboardSnapshot, *, repo_filter: str | None) -> str:
    counts = " ".join(f"{status}={count}" for status, count in snapshot.status_counts)
    return (
        f"repo={repo_filter or 'all'} | running={len(snapshot.running)} | {counts or 'no jobs'}"
        "\nKeys: r refresh | f repo filter | tab focus | q quit"
    )


def next_repo_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    options: tuple[str | None, ...] = (None, *available)
    if current not in options:
        return None
    return options[(options.index(current) + 1) % len(options)]


def render_seconds(value: float) -> str:
    if value < 60:
        return f"{value:.1f}s"
    if value < 3600:
        return f"{value / 60.0:.1f}m"
    return f"{value / 3600.0:.2f}h"


def elapsed_since(timestamp: str | None, *, now: float) -> float:
    if not timestamp:
        return 0.0
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return max(0.0, now - parsed.timestamp())


def _snippet(text: str | None) -> str:
    if not text:
        return "-"
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) <= _ERROR_MAX_CHARS:
        return first_line or "-"
    return f"{first_line[: _ERROR_MAX_CHARS - 3]}..."
