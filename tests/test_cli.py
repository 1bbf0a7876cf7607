from __future__ import annotations

import json
from pathlib import Path

import pytest

from issuesmith import cli
from issuesmith.config import ConfigError, load_config
from issuesmith.models import AutoMergeSettings
from issuesmith.state import StateStore, UnknownJobError


def _write_config(tmp_path: Path, *, repos: tuple[str, ...] = ("widgets",)) -> Path:
    sections = "\n".join(f'[repo.{repo_id}]\nowner = "acme"\n' for repo_id in repos)
    path = tmp_path / "issuesmith.toml"
    path.write_text(
        f"""
[runtime]
base_dir = "{tmp_path / 'state'}"
poll_interval_seconds = 60

{sections}
""",
        encoding="utf-8",
    )
    return path


def _state(config_path: Path) -> StateStore:
    return StateStore(load_config(config_path).runtime.state_db_path)


def _failed_job(state: StateStore, *, issue_number: int = 42) -> int:
    job = state.upsert_job(
        repo_full_name="acme/widgets", issue_number=issue_number, issue_title="Fix typo"
    )
    assert state.claim_job(job.job_id)
    state.transition_job(
        job.job_id, "failed", error="AgentFailedError: model refused\nstack", branch="work/x"
    )
    return job.job_id


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_run = parser.parse_args(["run", "--once", "-vv"])
    parsed_cancel = parser.parse_args(["jobs", "cancel", "--all", "--force"])
    parsed_set = parser.parse_args(["automerge", "set", "--no-enabled", "--stale-pr-days", "2"])
    parsed_top = parser.parse_args(["top", "--refresh-seconds", "5"])

    assert parsed_run.once is True
    assert parsed_run.verbose == 2
    assert parsed_run.config == Path("issuesmith.toml")
    assert parsed_cancel.all is True
    assert parsed_cancel.job_id is None
    assert parsed_cancel.force is True
    assert parsed_set.enabled is False
    assert parsed_set.auto_merge_clean is None
    assert parsed_set.stale_pr_days == 2.0
    assert parsed_top.refresh_seconds == 5


def test_cancel_needs_a_target() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["jobs", "cancel"])


@pytest.mark.parametrize("count,expected", [(0, None), (1, "low"), (2, "high"), (5, "high")])
def test_verbose_mode(count: int, expected: str | None) -> None:
    assert cli._verbose_mode(count) == expected


def test_init_creates_state_and_repo_layout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    prepared: list[str] = []

    class FakeLayout:
        mirror_path = tmp_path / "mirror.git"
        workspaces_root = tmp_path / "workspaces"

    class FakeGitRepoManager:
        def __init__(self, runtime: object, repo: object) -> None:
            self.layout = FakeLayout()
            self.repo = repo

        def ensure_layout(self) -> None:
            prepared.append(self.repo.full_name)  # type: ignore[attr-defined]

    monkeypatch.setattr(cli, "GitRepoManager", FakeGitRepoManager)

    cli.main(["init", "--config", str(config_path)])

    out = capsys.readouterr().out
    assert prepared == ["acme/widgets"]
    assert (tmp_path / "state" / "state.db").exists()
    assert "Repo: acme/widgets" in out
    assert f"Mirror: {tmp_path / 'mirror.git'}" in out


def test_run_wires_orchestrator_under_daemon_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_path = _write_config(tmp_path)
    seen: dict[str, object] = {}

    class FakeOrchestrator:
        def __init__(self, config: object, *, state: object, scheduler: object, repos: object):
            seen["repos"] = repos

        def run(self, *, once: bool) -> None:
            seen["once"] = once
            seen["lock_during_run"] = any((tmp_path / "state").glob("*.lock"))

        def stop(self) -> None:
            seen["stopped"] = True

    monkeypatch.setattr(cli, "Orchestrator", FakeOrchestrator)
    monkeypatch.setattr(
        cli, "build_repo_runtime", lambda config, repo, *, state, scheduler: repo.repo_id
    )
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: None)

    cli.main(["run", "--once", "--config", str(config_path)])

    assert seen["repos"] == ("widgets",)
    assert seen["once"] is True
    assert seen["lock_during_run"] is True
    assert not any((tmp_path / "state").glob("*.lock"))


def test_run_stops_on_keyboard_interrupt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    stopped: list[bool] = []

    class InterruptedOrchestrator:
        def __init__(self, config: object, **kwargs: object) -> None:
            pass

        def run(self, *, once: bool) -> None:
            raise KeyboardInterrupt

        def stop(self) -> None:
            stopped.append(True)

    monkeypatch.setattr(cli, "Orchestrator", InterruptedOrchestrator)
    monkeypatch.setattr(cli, "build_repo_runtime", lambda *args, **kwargs: None)
    monkeypatch.setattr(cli.signal, "signal", lambda signum, handler: None)

    cli.main(["run", "--config", str(config_path)])

    assert stopped == [True]


def test_jobs_list_text_and_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)

    cli.main(["jobs", "--config", str(config_path), "list"])
    assert capsys.readouterr().out.strip() == "No jobs."

    job_id = _failed_job(state)
    state.upsert_job(repo_full_name="acme/widgets", issue_number=43, issue_title="Other")

    cli.main(["jobs", "--config", str(config_path), "list", "--status", "failed"])
    out = capsys.readouterr().out
    assert f"job_id={job_id} repo=acme/widgets issue_number=42 status=failed" in out
    assert "branch=work/x" in out
    assert "error=AgentFailedError: model refused\n" in out
    assert "issue_number=43" not in out

    cli.main(["jobs", "--config", str(config_path), "list", "--json", "--limit", "1"])
    payload = json.loads(capsys.readouterr().out)
    assert len(payload) == 1


def test_jobs_running_reports_elapsed(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)

    cli.main(["jobs", "--config", str(config_path), "running"])
    assert capsys.readouterr().out.strip() == "No running jobs."

    job = state.upsert_job(repo_full_name="acme/widgets", issue_number=42, issue_title="Fix")
    assert state.claim_job(job.job_id)

    cli.main(["jobs", "--config", str(config_path), "running", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert [row["job_id"] for row in payload] == [job.job_id]
    assert payload[0]["branch"] is None
    assert payload[0]["elapsed_seconds"] >= 0

    cli.main(["jobs", "--config", str(config_path), "running"])
    assert "branch=-" in capsys.readouterr().out


def test_jobs_reset_moves_failed_job_to_pending(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)
    job_id = _failed_job(state)

    cli.main(["jobs", "--config", str(config_path), "reset", str(job_id)])

    assert "reset to pending" in capsys.readouterr().out
    assert state.require_job(job_id).status == "pending"
    with pytest.raises(UnknownJobError):
        cli.main(["jobs", "--config", str(config_path), "reset", "999"])


def test_jobs_cancel_queues_request(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)
    idle_job = _failed_job(state)
    running = state.upsert_job(repo_full_name="acme/widgets", issue_number=7, issue_title="Run")
    assert state.claim_job(running.job_id)

    cli.main(["jobs", "--config", str(config_path), "cancel", str(idle_job)])
    assert f"Job {idle_job} is not running (status=failed)" in capsys.readouterr().out

    cli.main(["jobs", "--config", str(config_path), "cancel", str(running.job_id), "--force"])
    cli.main(["jobs", "--config", str(config_path), "cancel", "--all"])

    out = capsys.readouterr().out
    assert f"for job {running.job_id}." in out
    assert "for all running tasks." in out
    pending = state.list_pending_cancel_requests()
    assert [(request.job_id, request.force) for request in pending] == [
        (running.job_id, True),
        (None, False),
    ]


def test_jobs_cancel_waits_for_daemon(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)
    running = state.upsert_job(repo_full_name="acme/widgets", issue_number=7, issue_title="Run")
    assert state.claim_job(running.job_id)

    def apply_pending(_seconds: float) -> None:
        for request in state.list_pending_cancel_requests():
            state.finish_cancel_request(request.request_id, applied=True, result="cancelled")

    monkeypatch.setattr(cli.time, "sleep", apply_pending)

    cli.main(
        ["jobs", "--config", str(config_path), "cancel", str(running.job_id), "--wait", "30"]
    )

    assert "applied: cancelled" in capsys.readouterr().out


def test_automerge_show_set_and_overrides(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)
    base = ["automerge", "--config", str(config_path)]

    cli.main([*base, "show", "--json"])
    shown = json.loads(capsys.readouterr().out)
    assert shown["source"] == "config"
    assert shown["enabled"] is True
    assert shown["merge_method"] == "merge"

    cli.main(
        [*base, "set", "--merge-method", "Squash", "--no-auto-merge-clean", "--stale-pr-days", "2"]
    )
    assert "Updated auto-merge policy for acme/widgets." in capsys.readouterr().out
    assert state.get_repo_auto_merge("acme/widgets") == AutoMergeSettings(
        auto_merge_clean=False, merge_method="squash", stale_pr_days=2.0
    )

    cli.main([*base, "pr-set", "--pr", "7", "--disable"])
    assert "Auto-merge disabled for acme/widgets#7." in capsys.readouterr().out

    cli.main([*base, "show", "--pr", "7"])
    out = capsys.readouterr().out
    assert "source=state" in out
    assert "overridden=True" in out
    assert "enabled=False" in out

    cli.main([*base, "pr-clear", "--pr", "7"])
    cli.main([*base, "pr-clear", "--pr", "7"])
    out = capsys.readouterr().out
    assert "Cleared auto-merge override for acme/widgets#7." in out
    assert "No auto-merge override for acme/widgets#7." in out


def test_automerge_set_requires_a_flag(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)

    with pytest.raises(RuntimeError, match="at least one setting flag"):
        cli.main(["automerge", "--config", str(config_path), "set"])


def test_automerge_requires_repo_with_several_repos(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, repos=("gadgets", "widgets"))

    with pytest.raises(RuntimeError, match="--repo is required"):
        cli.main(["automerge", "--config", str(config_path), "show"])
    with pytest.raises(ConfigError, match="Unknown repo 'nope'"):
        cli.main(["automerge", "--config", str(config_path), "show", "--repo", "nope"])


def test_conflicts_history(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path)
    state = _state(config_path)
    base = ["conflicts", "--config", str(config_path), "history"]

    cli.main(base)
    assert capsys.readouterr().out.strip() == "No conflict resolution attempts."

    attempt_id = state.create_conflict_attempt(
        repo_full_name="acme/widgets",
        pr_number=7,
        pr_title="Fix typo",
        conflicted_files=("db/migrations/001.sql", "src/app.py"),
    )
    state.finish_conflict_attempt(
        attempt_id,
        outcome="escalated",
        escalated_files=("db/migrations/001.sql",),
        reason="Protected files conflict",
    )

    cli.main([*base, "--pr", "7"])
    out = capsys.readouterr().out
    assert f"attempt_id={attempt_id} repo=acme/widgets pr_number=7 outcome=escalated" in out
    assert "conflicted=db/migrations/001.sql,src/app.py" in out
    assert "escalated=db/migrations/001.sql" in out
    assert "reason=Protected files conflict" in out

    cli.main([*base, "--json", "--repo", "widgets"])
    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["outcome"] == "escalated"


def test_top_opens_dashboard(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    seen: dict[str, object] = {}

    def fake_dashboard(*, db_path: Path, refresh_seconds: int) -> None:
        seen["db_path"] = db_path
        seen["refresh_seconds"] = refresh_seconds

    monkeypatch.setattr(cli, "run_dashboard", fake_dashboard)

    cli.main(["top", "--config", str(config_path), "--refresh-seconds", "3"])

    assert seen == {"db_path": tmp_path / "state" / "state.db", "refresh_seconds": 3}


@pytest.mark.parametrize(
    "seconds,expected",
    [(5.9, "5s"), (65, "1m05s"), (3720, "1h02m")],
)
def test_render_elapsed(seconds: float, expected: str) -> None:
    assert cli._render_elapsed(seconds) == expected


def test_summarize_error() -> None:
    assert cli._summarize_error("  ") == "<none>"
    assert cli._summarize_error("first\nsecond") == "first"
    assert cli._summarize_error("x" * 250) == "x" * 197 + "..."


def test_learn_add_list_and_remove(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_config(tmp_path)
    base = ["learn", "--config", str(config_path)]

    cli.main([*base, "list"])
    assert "No rules for acme/widgets." in capsys.readouterr().out

    cli.main([*base, "add", "--do", "Add a changelog entry"])
    cli.main([*base, "add", "--dont", "Edit generated files"])
    out = capsys.readouterr().out
    assert "Added DO rule 1 for acme/widgets: Add a changelog entry" in out
    assert "Added DON'T rule 2 for acme/widgets: Edit generated files" in out

    cli.main([*base, "list", "--json"])
    listed = json.loads(capsys.readouterr().out)
    assert [(item["rule_id"], item["kind"]) for item in listed] == [(1, "do"), (2, "dont")]

    cli.main([*base, "remove", "1"])
    cli.main([*base, "remove", "1"])
    out = capsys.readouterr().out
    assert "Removed rule 1 from acme/widgets." in out
    assert "No rule 1 for acme/widgets." in out
    assert [rule.text for rule in _state(config_path).list_rules("acme/widgets")] == [
        "Edit generated files"
    ]


def test_learn_add_needs_a_rule_kind() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["learn", "add"])
