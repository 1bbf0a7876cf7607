from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from issuesmith import daemon_lock as daemon_lock_module
from issuesmith.daemon_lock import (
    LOCK_FILENAME,
    DaemonLock,
    DaemonLockError,
    daemon_lock,
    pid_is_running,
    read_lock_owner,
)


def _write_owner(path: Path, **payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")


def test_lock_file_lives_for_the_block(tmp_path: Path) -> None:
    lock_path = tmp_path / LOCK_FILENAME

    with daemon_lock(base_dir=tmp_path, command="run") as owner:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
        assert payload["pid"] == os.getpid()
        assert payload["command"] == "run"
        assert payload["token"] == owner.token
        assert read_lock_owner(lock_path) == owner

    assert not lock_path.exists()


def test_live_owner_blocks_second_daemon(tmp_path: Path) -> None:
    lock_path = tmp_path / LOCK_FILENAME
    _write_owner(lock_path, pid=os.getpid(), command="run --once", token="abc")

    with pytest.raises(DaemonLockError, match=r"appears active \(pid=\d+, command=run --once\)"):
        with daemon_lock(base_dir=tmp_path, command="run"):
            pass
    assert lock_path.exists()


def test_dead_owner_lock_is_reclaimed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    lock_path = tmp_path / LOCK_FILENAME
    _write_owner(lock_path, pid=424242, command="run", token="old")
    monkeypatch.setattr(daemon_lock_module, "pid_is_running", lambda pid: False)

    with daemon_lock(base_dir=tmp_path, command="run") as owner:
        assert owner.token != "old"
        assert read_lock_owner(lock_path).token == owner.token

    assert not lock_path.exists()


def test_unreadable_lock_is_not_reclaimed(tmp_path: Path) -> None:
    lock_path = tmp_path / LOCK_FILENAME
    lock_path.write_text("not json", encoding="utf-8")

    with pytest.raises(DaemonLockError, match="Lock file:"):
        DaemonLock(lock_path, command="run").acquire()


def test_release_leaves_a_replaced_lock_alone(tmp_path: Path) -> None:
    lock_path = tmp_path / LOCK_FILENAME
    lock = DaemonLock(lock_path, command="run")
    lock.acquire()
    _write_owner(lock_path, pid=1, command="run", token="someone-else")

    lock.release()
    lock.release()

    assert read_lock_owner(lock_path).token == "someone-else"


def test_write_failure_removes_partial_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = tmp_path / LOCK_FILENAME

    def broken_write(fd: int, data: bytes) -> int:
        raise OSError("disk full")

    monkeypatch.setattr(daemon_lock_module.os, "write", broken_write)

    with pytest.raises(OSError, match="disk full"):
        DaemonLock(lock_path, command="run").acquire()
    assert not lock_path.exists()


@pytest.mark.parametrize(
    "content",
    ["", "[1, 2]", '{"pid": "12", "command": 3, "token": null}'],
)
def test_read_lock_owner_tolerates_bad_content(tmp_path: Path, content: str) -> None:
    path = tmp_path / LOCK_FILENAME
    path.write_text(content, encoding="utf-8")

    owner = read_lock_owner(path)

    assert owner.pid is None
    assert owner.command is None
    assert owner.token is None


def test_pid_is_running() -> None:
    assert pid_is_running(os.getpid()) is True
    assert pid_is_running(0) is False
