from __future__ import annotations

from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
import logging
import threading
import time
from typing import Literal

from issuesmith.cancellation import CancellationToken, TaskCancelledError
from issuesmith.models import JobRecord
from issuesmith.observability import log_event, log_warning
from issuesmith.state import InvalidTransitionError, StateStore


LOGGER = logging.getLogger("issuesmith.scheduler")

TaskKind = Literal["issue", "pull_request"]
SubmitOutcome = Literal["submitted", "already_running", "not_claimable"]
TaskKey = tuple[TaskKind, str, int]

_SLOT_POLL_SECONDS = 0.5


class TaskRegistrationError(RuntimeError):
    """A second live task was registered for the same key."""


@dataclass
class RunningTask:
    kind: TaskKind
    repo_full_name: str
    number: int
    job_id: int | None
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = 0.0
    _workspace: Path | None = field(default=None, init=False, repr=False)
    _discard: Callable[[Path], None] | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def key(self) -> TaskKey:
        return (self.kind, self.repo_full_name, self.number)

    @property
    def workspace(self) -> Path | None:
        with self._lock:
            return self._workspace

    def attach_workspace(self, path: Path, discard: Callable[[Path], None]) -> None:
        with self._lock:
            self._workspace = path
            self._discard = discard

    def detach_workspace(self) -> tuple[Path, Callable[[Path], None]] | None:
        with self._lock:
            if self._workspace is None or self._discard is None:
                return None
            attached = (self._workspace, self._discard)
            self._workspace = None
            self._discard = None
            return attached


@dataclass(frozen=True)
class RunningTaskInfo:
    kind: TaskKind
    repo_full_name: str
    number: int
    job_id: int | None
    elapsed_seconds: float
    workspace: Path | None
    cancel_requested: bool


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: str


@dataclass(frozen=True)
class CancelAllResult:
    cancelled: int
    failed: int
    messages: tuple[str, ...]


class TaskScheduler:
    """Runs job and pull-request work on a thread pool.

    At most one live task exists per job and per pull request. Agent
    invocations additionally pass through a global bounded semaphore.
    """

    def __init__(
        self,
        state: StateStore,
        *,
        max_concurrent_agents: int = 3,
        worker_count: int = 8,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent_agents < 1:
            raise ValueError("max_concurrent_agents must be >= 1")
        self._state = state
        self._monotonic = monotonic
        self._pool = ThreadPoolExecutor(
            max_workers=max(worker_count, max_concurrent_agents),
            thread_name_prefix="issuesmith-task",
        )
        self._agent_slots = threading.BoundedSemaphore(max_concurrent_agents)
        # Reentrant: a done-callback may fire inline on the submitting thread.
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._tasks: dict[TaskKey, RunningTask] = {}
        self._futures: dict[TaskKey, Future[None]] = {}

    def submit_job(
        self,
        job: JobRecord,
        work: Callable[[RunningTask], None],
    ) -> SubmitOutcome:
        key: TaskKey = ("issue", job.repo_full_name, job.issue_number)
        with self._lock:
            if key in self._tasks:
                log_event(
                    LOGGER,
                    "job_skipped",
                    job_id=job.job_id,
                    issue_number=job.issue_number,
                    reason="already_running",
                )
                return "already_running"
            if not self._state.claim_job(job.job_id):
                log_event(
                    LOGGER,
                    "job_skipped",
                    job_id=job.job_id,
                    issue_number=job.issue_number,
                    reason="not_claimable",
                )
                return "not_claimable"
            task = RunningTask(
                kind="issue",
                repo_full_name=job.repo_full_name,
                number=job.issue_number,
                job_id=job.job_id,
                started_at=self._monotonic(),
            )
            self._register_locked(task, work)
        log_event(
            LOGGER,
            "job_claimed",
            job_id=job.job_id,
            repo_full_name=job.repo_full_name,
            issue_number=job.issue_number,
        )
        return "submitted"

    def submit_pull_request(
        self,
        repo_full_name: str,
        pr_number: int,
        work: Callable[[RunningTask], None],
    ) -> SubmitOutcome:
        key: TaskKey = ("pull_request", repo_full_name, pr_number)
        with self._lock:
            if key in self._tasks:
                return "already_running"
            task = RunningTask(
                kind="pull_request",
                repo_full_name=repo_full_name,
                number=pr_number,
                job_id=None,
                started_at=self._monotonic(),
            )
            self._register_locked(task, work)
        log_event(
            LOGGER,
            "pull_request_task_submitted",
            repo_full_name=repo_full_name,
            pr_number=pr_number,
        )
        return "submitted"

    @contextmanager
    def agent_slot(self, task: RunningTask) -> Iterator[None]:
        waited_from = self._monotonic()
        while not self._agent_slots.acquire(timeout=_SLOT_POLL_SECONDS):
            if task.token.cancelled:
                raise TaskCancelledError("before_agent", forced=task.token.forced)
        try:
            if task.token.cancelled:
                raise TaskCancelledError("before_agent", forced=task.token.forced)
            log_event(
                LOGGER,
                "agent_slot_acquired",
                kind=task.kind,
                repo_full_name=task.repo_full_name,
                number=task.number,
                waited_seconds=round(self._monotonic() - waited_from, 3),
            )
            yield
        finally:
            self._agent_slots.release()

    def cancel(self, job_id: int, *, force: bool = False) -> CancelResult:
        with self._lock:
            task = next(
                (item for item in self._tasks.values() if item.job_id == job_id),
                None,
            )
        if task is None:
            return CancelResult(False, f"Job {job_id} is not running")
        return self._cancel_task(task, force=force)

    def cancel_all(self, *, force: bool = False) -> CancelAllResult:
        with self._lock:
            tasks = list(self._tasks.values())
        cancelled = 0
        failed = 0
        messages: list[str] = []
        for task in tasks:
            result = self._cancel_task(task, force=force)
            if result.success:
                cancelled += 1
            else:
                failed += 1
            messages.append(result.message)
        return CancelAllResult(cancelled=cancelled, failed=failed, messages=tuple(messages))

    def list_running(self) -> tuple[RunningTaskInfo, ...]:
        now = self._monotonic()
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda item: item.started_at)
        return tuple(
            RunningTaskInfo(
                kind=task.kind,
                repo_full_name=task.repo_full_name,
                number=task.number,
                job_id=task.job_id,
                elapsed_seconds=max(0.0, now - task.started_at),
                workspace=task.workspace,
                cancel_requested=task.token.cancelled,
            )
            for task in tasks
        )

    def live_job_ids(self) -> frozenset[int]:
        with self._lock:
            return frozenset(
                task.job_id for task in self._tasks.values() if task.job_id is not None
            )

    def running_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._tasks, timeout=timeout)

    def shutdown(self, *, wait: bool = True, cancel: bool = False) -> None:
        if cancel:
            self.cancel_all(force=False)
        self._pool.shutdown(wait=wait)
        log_event(LOGGER, "scheduler_shutdown", waited=wait)

    def _register_locked(self, task: RunningTask, work: Callable[[RunningTask], None]) -> None:
        if task.key in self._tasks:
            raise TaskRegistrationError(f"{_describe(task)} already has a live task")
        self._tasks[task.key] = task
        future = self._pool.submit(work, task)
        self._futures[task.key] = future
        future.add_done_callback(lambda done, task=task: self._finish(task, done))

    def _finish(self, task: RunningTask, future: Future[None]) -> None:
        exc = future.exception()
        if exc is not None:
            log_warning(
                LOGGER,
                "task_crashed",
                kind=task.kind,
                repo_full_name=task.repo_full_name,
                number=task.number,
                error_type=type(exc).__name__,
            )
            if task.job_id is not None:
                self._fail_orphaned_job(task.job_id, exc)
        with self._idle:
            self._tasks.pop(task.key, None)
            self._futures.pop(task.key, None)
            self._idle.notify_all()
        log_event(
            LOGGER,
            "task_finished",
            kind=task.kind,
            repo_full_name=task.repo_full_name,
            number=task.number,
            elapsed_seconds=round(self._monotonic() - task.started_at, 3),
        )

    def _fail_orphaned_job(self, job_id: int, exc: BaseException) -> None:
        job = self._state.get_job(job_id)
        if job is None or job.status != "in-progress":
            return
        try:
            self._state.transition_job(job_id, "failed", error=f"{type(exc).__name__}: {exc}")
        except InvalidTransitionError:
            log_warning(LOGGER, "job_fail_transition_rejected", job_id=job_id)

    def _cancel_task(self, task: RunningTask, *, force: bool) -> CancelResult:
        task.token.cancel(force=force, reason="operator request")
        log_event(
            LOGGER,
            "task_cancel_requested",
            kind=task.kind,
            repo_full_name=task.repo_full_name,
            number=task.number,
            job_id=task.job_id,
            force=force,
        )
        if force:
            attached = task.detach_workspace()
            if attached is not None:
                path, discard = attached
                discard(path)
        suffix = " (forced)" if force else ""
        return CancelResult(True, f"Cancellation requested for {_describe(task)}{suffix}")


def _describe(task: RunningTask) -> str:
    if task.kind == "issue":
        return f"job {task.job_id} ({task.repo_full_name}#{task.number})"
    return f"pull request {task.repo_full_name}#{task.number}"
