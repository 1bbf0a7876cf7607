from __future__ import annotations

from pathlib import Path
import json
import logging
import tempfile
from typing import cast

from issuesmith.agent_adapter import AgentAdapter, AgentResult
from issuesmith.cancellation import CancellationToken, TaskCancelledError
from issuesmith.config import CodexConfig
from issuesmith.git_ops import parse_porcelain_status
from issuesmith.observability import log_event
from issuesmith.shell import (
    CommandAbortedError,
    CommandError,
    CommandTimeoutError,
    run,
    run_abortable,
)


LOGGER = logging.getLogger("issuesmith.codex_adapter")


class CodexAdapter(AgentAdapter):
    def __init__(self, config: CodexConfig) -> None:
        self._config = config

    def run_task(
        self,
        *,
        cwd: Path,
        prompt: str,
        model_hint: str | None,
        cancel: CancellationToken,
    ) -> AgentResult:
        log_event(
            LOGGER,
            "agent_invocation_started",
            cwd=str(cwd),
            model=model_hint or self._config.model,
        )
        timed_out = False
        with tempfile.TemporaryDirectory(prefix="issuesmith_codex_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-last-message",
                str(output_path),
                "-",
            ]
            self._append_common_options(cmd, model_hint=model_hint)
            try:
                proc = run_abortable(
                    cmd,
                    cwd=cwd,
                    input_text=prompt,
                    timeout_seconds=self._config.timeout_seconds,
                    should_abort=lambda: cancel.forced,
                )
                returncode = proc.returncode
                raw_events = proc.stdout
                stderr = proc.stderr
            except CommandAbortedError as exc:
                raise TaskCancelledError("during_agent", forced=True) from exc
            except CommandTimeoutError as exc:
                timed_out = True
                returncode = -1
                raw_events = exc.stdout
                stderr = exc.stderr
            last_message = (
                output_path.read_text(encoding="utf-8").strip() if output_path.exists() else ""
            )

        summary = last_message or _extract_final_agent_message(raw_events) or stderr.strip()
        if timed_out:
            summary = f"Agent timed out after {self._config.timeout_seconds}s. {summary}".strip()
        files_changed = _changed_files(cwd)
        result = AgentResult(
            success=returncode == 0 and not timed_out,
            summary=summary,
            files_changed=files_changed,
            timed_out=timed_out,
        )
        log_event(
            LOGGER,
            "agent_invocation_finished",
            cwd=str(cwd),
            success=result.success,
            timed_out=timed_out,
            exit_code=returncode,
            files_changed_count=len(files_changed),
        )
        return result

    def ask(self, *, cwd: Path, prompt: str) -> str:
        with tempfile.TemporaryDirectory(prefix="issuesmith_codex_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--skip-git-repo-check",
                "--sandbox",
                "read-only",
                "--output-last-message",
                str(output_path),
                "-",
            ]
            self._append_common_options(cmd, model_hint=None, include_sandbox=False)
            run(
                cmd,
                cwd=cwd,
                input_text=prompt,
                timeout_seconds=self._config.association_timeout_seconds,
            )
            if not output_path.exists():
                raise CommandError("Codex did not write a final message")
            return output_path.read_text(encoding="utf-8").strip()

    def _append_common_options(
        self, cmd: list[str], *, model_hint: str | None, include_sandbox: bool = True
    ) -> None:
        model = model_hint or self._config.model
        if model:
            cmd.extend(["--model", model])
        if include_sandbox and self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def _changed_files(cwd: Path) -> tuple[str, ...]:
    try:
        return parse_porcelain_status(run(["git", "-C", str(cwd), "status", "--porcelain"]))
    except CommandError:
        log_event(LOGGER, "agent_changed_files_unavailable", cwd=str(cwd))
        return ()


def _extract_final_agent_message(raw_events: str) -> str:
    last_message = ""
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None or payload.get("type") != "item.completed":
            continue
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            continue
        message_text = item_obj.get("text")
        if item_obj.get("type") == "agent_message" and isinstance(message_text, str):
            last_message = message_text
    return last_message


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
