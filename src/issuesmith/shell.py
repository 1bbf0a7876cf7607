from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
import logging
import subprocess
import time


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    def __init__(self, message: str, *, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class CommandAbortedError(CommandError):
    pass


LOGGER = logging.getLogger("issuesmith.shell")

_ABORT_POLL_SECONDS = 0.5


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
) -> str:
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            " ".join(argv),
            timeout_seconds,
        )
        raise CommandTimeoutError(
            f"Command timed out after {timeout_seconds}s\ncmd: {' '.join(argv)}",
            stdout=_decode(exc.stdout),
            stderr=_decode(exc.stderr),
        ) from exc
    if check and proc.returncode != 0:
        _raise_failure(argv, proc.returncode, proc.stdout, proc.stderr)
    return proc.stdout


def run_abortable(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    timeout_seconds: float | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a long command, killing it on timeout or when should_abort() turns true.

    The exit status is returned rather than raised so that callers can inspect
    partial output from a failed run.
    """
    proc = subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd else None,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    pending_input = input_text
    while True:
        try:
            stdout, stderr = proc.communicate(input=pending_input, timeout=_ABORT_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            # communicate() must not resend stdin on the next call.
            pending_input = None
        if should_abort is not None and should_abort():
            proc.kill()
            proc.communicate()
            LOGGER.warning("event=command_aborted command=%s", " ".join(argv))
            raise CommandAbortedError(f"Command aborted\ncmd: {' '.join(argv)}")
        if deadline is not None and time.monotonic() >= deadline:
            proc.kill()
            stdout, stderr = proc.communicate()
            LOGGER.error(
                "event=command_timed_out command=%s timeout_seconds=%s",
                " ".join(argv),
                timeout_seconds,
            )
            raise CommandTimeoutError(
                f"Command timed out after {timeout_seconds}s\ncmd: {' '.join(argv)}",
                stdout=stdout or "",
                stderr=stderr or "",
            )
    return subprocess.CompletedProcess(
        args=argv, returncode=proc.returncode, stdout=stdout or "", stderr=stderr or ""
    )


def _raise_failure(argv: list[str], returncode: int, stdout: str, stderr: str) -> None:
    LOGGER.error(
        "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
        " ".join(argv),
        returncode,
        _preview(stderr),
        _preview(stdout),
    )
    raise CommandError(
        "Command failed\n"
        f"cmd: {' '.join(argv)}\n"
        f"exit: {returncode}\n"
        f"stdout:\n{stdout}\n"
        f"stderr:\n{stderr}"
    )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
