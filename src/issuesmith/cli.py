from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path
import signal
import time
from typing import cast

from issuesmith.config import (
    AppConfig,
    RepoConfig,
    load_config,
    parse_auto_merge_settings,
    parse_merge_method,
)
from issuesmith.daemon_lock import daemon_lock
from issuesmith.dashboard import elapsed_since, run_dashboard
from issuesmith.git_ops import GitRepoManager
from issuesmith.merge_policy import effective_auto_merge
from issuesmith.models import JOB_STATUSES, JobRecord, JobStatus, RuleKind
from issuesmith.observability import configure_logging
from issuesmith.orchestrator import Orchestrator, build_repo_runtime
from issuesmith.scheduler import TaskScheduler
from issuesmith.state import StateStore


_CANCEL_WAIT_POLL_SECONDS = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="issuesmith")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize state DB and repo mirrors")
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser("run", help="Poll issues and pull requests and run jobs")
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once", action="store_true", help="Poll once and wait for running tasks"
    )

    jobs_parser = subparsers.add_parser("jobs", help="Inspect and manage issue jobs")
    _add_common_arguments(jobs_parser)
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list_parser = jobs_subparsers.add_parser("list", help="List jobs by recency")
    jobs_list_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    jobs_list_parser.add_argument(
        "--status", choices=JOB_STATUSES, action="append", help="Status filter (repeatable)"
    )
    jobs_list_parser.add_argument("--limit", type=int, default=50)
    jobs_list_parser.add_argument("--json", action="store_true", help="Print jobs as JSON")

    jobs_running_parser = jobs_subparsers.add_parser(
        "running", help="List in-progress jobs with elapsed time"
    )
    jobs_running_parser.add_argument("--json", action="store_true", help="Print jobs as JSON")

    jobs_reset_parser = jobs_subparsers.add_parser(
        "reset", help="Move a failed or done job back to pending"
    )
    jobs_reset_parser.add_argument("job_id", type=int)

    jobs_cancel_parser = jobs_subparsers.add_parser(
        "cancel", help="Ask the running daemon to cancel a job"
    )
    cancel_target = jobs_cancel_parser.add_mutually_exclusive_group(required=True)
    cancel_target.add_argument("job_id", type=int, nargs="?")
    cancel_target.add_argument("--all", action="store_true", help="Cancel every running task")
    jobs_cancel_parser.add_argument(
        "--force", action="store_true", help="Also discard the task workspace"
    )
    jobs_cancel_parser.add_argument(
        "--wait",
        type=float,
        default=0.0,
        help="Seconds to wait for the daemon to apply the request",
    )

    automerge_parser = subparsers.add_parser("automerge", help="Inspect and edit auto-merge policy")
    _add_common_arguments(automerge_parser)
    automerge_subparsers = automerge_parser.add_subparsers(
        dest="automerge_command", required=True
    )

    show_parser = automerge_subparsers.add_parser("show", help="Show effective auto-merge policy")
    show_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    show_parser.add_argument("--pr", type=int, help="Include the override for this pull request")
    show_parser.add_argument("--json", action="store_true", help="Print policy as JSON")

    set_parser = automerge_subparsers.add_parser("set", help="Persist repo auto-merge policy")
    set_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    set_parser.add_argument("--enabled", action=argparse.BooleanOptionalAction, default=None)
    set_parser.add_argument(
        "--auto-merge-clean", action=argparse.BooleanOptionalAction, default=None
    )
    set_parser.add_argument(
        "--auto-resolve-conflicts", action=argparse.BooleanOptionalAction, default=None
    )
    set_parser.add_argument("--merge-method", type=str)
    set_parser.add_argument("--stale-pr-days", type=float)
    set_parser.add_argument("--max-resolution-attempts", type=int)

    pr_set_parser = automerge_subparsers.add_parser(
        "pr-set", help="Override auto-merge for one pull request"
    )
    pr_set_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    pr_set_parser.add_argument("--pr", type=int, required=True)
    pr_toggle = pr_set_parser.add_mutually_exclusive_group(required=True)
    pr_toggle.add_argument("--enable", dest="enabled", action="store_true")
    pr_toggle.add_argument("--disable", dest="enabled", action="store_false")
    pr_set_parser.add_argument("--merge-method", type=str)

    pr_clear_parser = automerge_subparsers.add_parser(
        "pr-clear", help="Remove a pull request override"
    )
    pr_clear_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    pr_clear_parser.add_argument("--pr", type=int, required=True)

    conflicts_parser = subparsers.add_parser("conflicts", help="Inspect conflict resolution")
    _add_common_arguments(conflicts_parser)
    conflicts_subparsers = conflicts_parser.add_subparsers(
        dest="conflicts_command", required=True
    )
    history_parser = conflicts_subparsers.add_parser(
        "history", help="List conflict resolution attempts"
    )
    history_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    history_parser.add_argument("--pr", type=int)
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.add_argument("--json", action="store_true", help="Print attempts as JSON")

    learn_parser = subparsers.add_parser("learn", help="Manage per-repo rules for the agent")
    _add_common_arguments(learn_parser)
    learn_subparsers = learn_parser.add_subparsers(dest="learn_command", required=True)

    learn_add_parser = learn_subparsers.add_parser("add", help="Teach the agent a rule")
    learn_add_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    rule_kind = learn_add_parser.add_mutually_exclusive_group(required=True)
    rule_kind.add_argument("--do", dest="do_rule", type=str, help="Something to always do")
    rule_kind.add_argument("--dont", dest="dont_rule", type=str, help="Something to never do")

    learn_list_parser = learn_subparsers.add_parser("list", help="List the rules for a repo")
    learn_list_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    learn_list_parser.add_argument("--json", action="store_true", help="Print rules as JSON")

    learn_remove_parser = learn_subparsers.add_parser("remove", help="Forget a rule")
    learn_remove_parser.add_argument("--repo", type=str, help="Repo id or owner/name")
    learn_remove_parser.add_argument("rule_id", type=int)

    top_parser = subparsers.add_parser("top", help="Open the live job dashboard")
    _add_common_arguments(top_parser)
    top_parser.add_argument("--refresh-seconds", type=int, default=2)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("issuesmith.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log lifecycle events to stderr; repeat (-vv) for every event",
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    verbose = _verbose_mode(int(args.verbose))

    if args.command == "init":
        configure_logging(verbose)
        _cmd_init(config)
        return
    if args.command == "run":
        _cmd_run(config, once=bool(args.once), verbose=verbose)
        return

    configure_logging(verbose)
    if args.command == "jobs":
        _cmd_jobs(config, args)
        return
    if args.command == "automerge":
        _cmd_automerge(config, args)
        return
    if args.command == "conflicts":
        _cmd_conflicts(config, args)
        return
    if args.command == "learn":
        _cmd_learn(config, args)
        return
    if args.command == "top":
        run_dashboard(
            db_path=config.runtime.state_db_path, refresh_seconds=int(args.refresh_seconds)
        )
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.runtime.state_db_path)

    print(f"Initialized issuesmith base dir: {config.runtime.base_dir}")
    print(f"State DB: {config.runtime.state_db_path}")
    for repo in config.repos:
        git_manager = GitRepoManager(config.runtime, repo)
        git_manager.ensure_layout()
        print(f"Repo: {repo.full_name}")
        print(f"Mirror: {git_manager.layout.mirror_path}")
        print(f"Workspaces: {git_manager.layout.workspaces_root}")


def _cmd_run(config: AppConfig, *, once: bool, verbose: str | None) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    configure_logging(verbose, state_dir=config.runtime.base_dir)
    command = "issuesmith run --once" if once else "issuesmith run"
    with daemon_lock(base_dir=config.runtime.base_dir, command=command):
        state = StateStore(config.runtime.state_db_path)
        scheduler = TaskScheduler(
            state,
            max_concurrent_agents=config.runtime.max_concurrent_agents,
            worker_count=config.runtime.worker_count,
        )
        runtimes = tuple(
            build_repo_runtime(config, repo, state=state, scheduler=scheduler)
            for repo in config.repos
        )
        orchestrator = Orchestrator(config, state=state, scheduler=scheduler, repos=runtimes)
        signal.signal(signal.SIGTERM, lambda _signum, _frame: orchestrator.stop())
        try:
            orchestrator.run(once=once)
        except KeyboardInterrupt:
            orchestrator.stop()


def _cmd_jobs(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(config.runtime.state_db_path)
    if args.jobs_command == "list":
        repo = _resolve_repo(config, args.repo, required=False)
        statuses = (
            tuple(cast(JobStatus, status) for status in args.status) if args.status else None
        )
        jobs = state.list_jobs(
            repo_full_name=repo.full_name if repo is not None else None,
            statuses=statuses,
            limit=int(args.limit),
        )
        _print_jobs(jobs, as_json=bool(args.json))
        return
    if args.jobs_command == "running":
        _cmd_jobs_running(state, as_json=bool(args.json))
        return
    if args.jobs_command == "reset":
        job = state.reset_job(int(args.job_id))
        print(f"Job {job.job_id} ({job.repo_full_name}#{job.issue_number}) reset to pending.")
        return
    if args.jobs_command == "cancel":
        _cmd_jobs_cancel(
            state,
            job_id=None if args.all else int(args.job_id),
            force=bool(args.force),
            wait_seconds=float(args.wait),
        )
        return
    raise RuntimeError(f"Unknown jobs command: {args.jobs_command}")


def _print_jobs(jobs: tuple[JobRecord, ...], *, as_json: bool) -> None:
    if as_json:
        print(json.dumps([asdict(job) for job in jobs], indent=2))
        return
    if not jobs:
        print("No jobs.")
        return
    for job in jobs:
        print(
            f"job_id={job.job_id} repo={job.repo_full_name} issue_number={job.issue_number} "
            f"status={job.status} updated_at={job.updated_at}"
        )
        print(f"title={job.issue_title}")
        if job.branch:
            print(f"branch={job.branch}")
        if job.pr_url:
            print(f"pr_url={job.pr_url}")
        if job.error:
            print(f"error={_summarize_error(job.error)}")
        print()


def _cmd_jobs_running(state: StateStore, *, as_json: bool) -> None:
    jobs = state.list_jobs(statuses=("in-progress",), limit=1000)
    now = time.time()
    rows = [(job, elapsed_since(job.claimed_at, now=now)) for job in jobs]
    if as_json:
        payload = [
            {
                "job_id": job.job_id,
                "repo_full_name": job.repo_full_name,
                "issue_number": job.issue_number,
                "branch": job.branch,
                "claimed_at": job.claimed_at,
                "elapsed_seconds": round(elapsed, 1),
            }
            for job, elapsed in rows
        ]
        print(json.dumps(payload, indent=2))
        return
    if not rows:
        print("No running jobs.")
        return
    for job, elapsed in rows:
        print(
            f"job_id={job.job_id} repo={job.repo_full_name} issue_number={job.issue_number} "
            f"elapsed={_render_elapsed(elapsed)} branch={job.branch or '-'}"
        )


def _cmd_jobs_cancel(
    state: StateStore, *, job_id: int | None, force: bool, wait_seconds: float
) -> None:
    if job_id is not None:
        job = state.require_job(job_id)
        if job.status != "in-progress":
            print(f"Job {job_id} is not running (status={job.status}); nothing to cancel.")
            return
    request_id = state.request_cancel(job_id=job_id, force=force)
    target = "all running tasks" if job_id is None else f"job {job_id}"
    print(f"Queued cancel request {request_id} for {target}.")
    if wait_seconds <= 0:
        return
    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        request = state.get_cancel_request(request_id)
        if request is not None and request.status != "pending":
            print(f"{request.status}: {request.result or '-'}")
            return
        time.sleep(_CANCEL_WAIT_POLL_SECONDS)
    print("The daemon has not applied the request yet; it is applied on the next poll.")


def _cmd_automerge(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(config.runtime.state_db_path)
    repo = _require_repo(config, args.repo)

    if args.automerge_command == "show":
        stored = state.get_repo_auto_merge(repo.full_name)
        repo_settings = stored or repo.auto_merge
        override = (
            state.get_pr_auto_merge(repo_full_name=repo.full_name, pr_number=int(args.pr))
            if args.pr is not None
            else None
        )
        effective = effective_auto_merge(repo_settings, override)
        payload: dict[str, object] = {
            "repo_full_name": repo.full_name,
            "source": "state" if stored is not None else "config",
            "pr_number": args.pr,
            "overridden": effective.overridden,
            **asdict(effective.settings),
        }
        if args.json:
            print(json.dumps(payload, indent=2))
            return
        for key, value in payload.items():
            print(f"{key}={value}")
        return

    if args.automerge_command == "set":
        base = state.get_repo_auto_merge(repo.full_name) or repo.auto_merge
        updates: dict[str, object] = {}
        if args.enabled is not None:
            updates["enabled"] = args.enabled
        if args.auto_merge_clean is not None:
            updates["auto_merge_clean"] = args.auto_merge_clean
        if args.auto_resolve_conflicts is not None:
            updates["auto_resolve_conflicts"] = args.auto_resolve_conflicts
        if args.merge_method is not None:
            updates["merge_method"] = args.merge_method
        if args.stale_pr_days is not None:
            updates["stale_pr_days"] = args.stale_pr_days
        if args.max_resolution_attempts is not None:
            updates["max_resolution_attempts"] = args.max_resolution_attempts
        if not updates:
            raise RuntimeError("automerge set requires at least one setting flag")
        settings = parse_auto_merge_settings(updates, defaults=base)
        state.set_repo_auto_merge(repo.full_name, settings)
        print(f"Updated auto-merge policy for {repo.full_name}.")
        return

    if args.automerge_command == "pr-set":
        method = (
            parse_merge_method(args.merge_method, key="--merge-method")
            if args.merge_method is not None
            else None
        )
        state.set_pr_auto_merge(
            repo_full_name=repo.full_name,
            pr_number=int(args.pr),
            enabled=bool(args.enabled),
            merge_method=method,
        )
        status = "enabled" if args.enabled else "disabled"
        print(f"Auto-merge {status} for {repo.full_name}#{args.pr}.")
        return

    if args.automerge_command == "pr-clear":
        removed = state.clear_pr_auto_merge(repo_full_name=repo.full_name, pr_number=int(args.pr))
        if removed:
            print(f"Cleared auto-merge override for {repo.full_name}#{args.pr}.")
        else:
            print(f"No auto-merge override for {repo.full_name}#{args.pr}.")
        return

    raise RuntimeError(f"Unknown automerge command: {args.automerge_command}")


def _cmd_conflicts(config: AppConfig, args: argparse.Namespace) -> None:
    if args.conflicts_command != "history":
        raise RuntimeError(f"Unknown conflicts command: {args.conflicts_command}")
    state = StateStore(config.runtime.state_db_path)
    repo = _resolve_repo(config, args.repo, required=False)
    attempts = state.list_conflict_attempts(
        repo_full_name=repo.full_name if repo is not None else None,
        pr_number=args.pr,
        limit=int(args.limit),
    )
    if args.json:
        print(json.dumps([asdict(attempt) for attempt in attempts], indent=2))
        return
    if not attempts:
        print("No conflict resolution attempts.")
        return
    for attempt in attempts:
        print(
            f"attempt_id={attempt.attempt_id} repo={attempt.repo_full_name} "
            f"pr_number={attempt.pr_number} outcome={attempt.outcome} "
            f"created_at={attempt.created_at}"
        )
        print(f"conflicted={','.join(attempt.conflicted_files) or '-'}")
        if attempt.escalated_files:
            print(f"escalated={','.join(attempt.escalated_files)}")
        if attempt.reason:
            print(f"reason={_summarize_error(attempt.reason)}")
        print()


def _cmd_learn(config: AppConfig, args: argparse.Namespace) -> None:
    state = StateStore(config.runtime.state_db_path)
    repo = _require_repo(config, args.repo)

    if args.learn_command == "add":
        kind: RuleKind = "do" if args.do_rule is not None else "dont"
        text = args.do_rule if args.do_rule is not None else args.dont_rule
        rule = state.add_rule(repo_full_name=repo.full_name, kind=kind, text=text)
        label = "DO" if rule.kind == "do" else "DON'T"
        print(f"Added {label} rule {rule.rule_id} for {repo.full_name}: {rule.text}")
        return

    if args.learn_command == "list":
        rules = state.list_rules(repo.full_name)
        if args.json:
            print(json.dumps([asdict(rule) for rule in rules], indent=2))
            return
        if not rules:
            print(f"No rules for {repo.full_name}.")
            return
        for rule in rules:
            print(f"rule_id={rule.rule_id} kind={rule.kind} text={rule.text}")
        return

    if args.learn_command == "remove":
        removed = state.remove_rule(repo_full_name=repo.full_name, rule_id=int(args.rule_id))
        if removed:
            print(f"Removed rule {args.rule_id} from {repo.full_name}.")
        else:
            print(f"No rule {args.rule_id} for {repo.full_name}.")
        return

    raise RuntimeError(f"Unknown learn command: {args.learn_command}")


def _resolve_repo(config: AppConfig, raw_repo: str | None, *, required: bool) -> RepoConfig | None:
    if raw_repo is None:
        if len(config.repos) == 1:
            return config.repos[0]
        if required:
            raise RuntimeError("--repo is required when multiple repos are configured")
        return None
    candidate = raw_repo.strip()
    if not candidate:
        raise RuntimeError("--repo must be non-empty")
    return config.find_repo(candidate)


def _require_repo(config: AppConfig, raw_repo: str | None) -> RepoConfig:
    repo = _resolve_repo(config, raw_repo, required=True)
    if repo is None:
        raise RuntimeError("--repo is required when multiple repos are configured")
    return repo


def _render_elapsed(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def _summarize_error(error: str) -> str:
    first_line = error.strip().splitlines()[0] if error.strip() else ""
    if not first_line:
        return "<none>"
    if len(first_line) <= 200:
        return first_line
    return f"{first_line[:197]}..."


def _verbose_mode(count: int) -> str | None:
    if count <= 0:
        return None
    return "low" if count == 1 else "high"
