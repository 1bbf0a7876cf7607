from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import os
from pathlib import Path
import secrets
from typing import Iterator


LOCK_FILENAME = "daemon.lock"


class DaemonLockError(RuntimeError):
    """Another daemon already owns the base directory."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    command: str | None
    started_at: str | None
    token: str | None


_NO_OWNER = LockOwner(pid=None, command=None, started_at=None, token=None)


@contextmanager
def daemon_lock(*, base_dir: Path, command: str) -> Iterator[LockOwner]:
    """Hold the single-daemon lock for base_dir for the duration of the block."""
    lock = DaemonLock(base_dir / LOCK_FILENAME, command=command)
    owner = lock.acquire()
    try:
        yield owner
    finally:
        lock.release()


class DaemonLock:
    def __init__(self, path: Path, *, command: str) -> None:
        self._path = path
        self._command = command
        self._token: str | None = None

    def acquire(self) -> LockOwner:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Two tries: the second follows removal of a lock left by a dead process.
        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._remove_if_owner_dead():
                    continue
                raise DaemonLockError(self._held_message()) from None
            owner = LockOwner(
                pid=os.getpid(),
                command=self._command,
                started_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
                token=secrets.token_hex(16),
            )
            try:
                os.write(fd, (json.dumps(owner.__dict__, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except OSError:
                os.close(fd)
                self._path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = owner.token
            return owner
        raise DaemonLockError(self._held_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        # Never remove a lock file that another process has since replaced.
        if read_lock_owner(self._path).token == token:
            self._path.unlink(missing_ok=True)

    def _remove_if_owner_dead(self) -> bool:
        owner = read_lock_owner(self._path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        try:
            self._path.unlink()
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _held_message(self) -> str:
        owner = read_lock_owner(self._path)
        details = [
            part
            for part in (
                f"pid={owner.pid}" if owner.pid is not None else "",
                f"command={owner.command}" if owner.command else "",
            )
            if part
        ]
        suffix = f" ({', '.join(details)})" if details else ""
        return (
            f"Another issuesmith daemon appears active{suffix}. Lock file: {self._path}. "
            "Remove the file only if no daemon is running."
        )


def read_lock_owner(path: Path) -> LockOwner:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return _NO_OWNER
    if not text:
        return _NO_OWNER
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return _NO_OWNER
    if not isinstance(payload, dict):
        return _NO_OWNER
    pid = payload.get("pid")
    command = payload.get("command")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) else None,
        command=command if isinstance(command, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
