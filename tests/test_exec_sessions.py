from __future__ import annotations

import os
import re
import threading
from pathlib import Path

import pytest

from exec_runtime.core.exec_sessions import (
    DEFAULT_FINISHED_TTL_MS,
    ProcessRegistry,
    ProcessSession,
    wait_for_exit,
)
from exec_runtime.core.launcher import ProcessLauncher, default_shell


def _registered(registry: ProcessRegistry, command: str = "sleep 1", **kwargs: object) -> ProcessSession:
    session = registry.create_session(command=command, cwd="/tmp", **kwargs)  # type: ignore[arg-type]
    registry.register(session)
    return session


def test_session_ids_are_prefixed_and_unique() -> None:
    ids = {ProcessRegistry.create_session_id() for _ in range(50)}

    assert len(ids) == 50
    assert all(re.fullmatch(r"proc_[0-9a-f]{12}", sid) for sid in ids)


def test_mark_exited_moves_session_to_finished() -> None:
    registry = ProcessRegistry()
    session = _registered(registry)

    assert registry.get(session.id) is session
    registry.mark_exited(session, 0, None)

    assert registry.get(session.id) is None
    assert registry.get_finished(session.id) is session
    assert registry.lookup(session.id) is session
    assert session.status == "completed"
    assert session.ended_at_ms is not None
    assert session.wait_exited(0) is True


@pytest.mark.parametrize(
    ("code", "sig", "expected"),
    [(0, None, "completed"), (None, None, "completed"), (1, None, "failed"), (None, "SIGKILL", "killed")],
)
def test_mark_exited_classifies_status(code: object, sig: object, expected: str) -> None:
    registry = ProcessRegistry()
    session = _registered(registry)

    registry.mark_exited(session, code, sig)  # type: ignore[arg-type]

    assert session.status == expected


def test_terminal_status_never_changes() -> None:
    registry = ProcessRegistry()
    session = _registered(registry)

    registry.mark_exited(session, None, None, status="timeout")
    registry.mark_exited(session, 0, None)
    registry.mark_exited(session, None, "SIGKILL")

    assert session.status == "timeout"
    assert session.exit_signal is None


def test_cleared_session_is_not_resurrected_by_exit() -> None:
    registry = ProcessRegistry()
    session = _registered(registry)

    assert registry.delete(session.id) is True
    registry.mark_exited(session, 0, None)

    assert registry.lookup(session.id) is None
    assert registry.list_finished() == []
    assert registry.delete(session.id) is False


def test_finished_table_evicts_oldest_first() -> None:
    registry = ProcessRegistry(max_finished=2)
    sessions = [_registered(registry, command=f"job {i}") for i in range(3)]
    for s in sessions:
        registry.mark_exited(s, 0, None)

    assert [s.command for s in registry.list_finished()] == ["job 1", "job 2"]


def test_finished_sessions_expire_after_ttl() -> None:
    registry = ProcessRegistry(finished_ttl_ms=1_000)
    old = _registered(registry)
    fresh = _registered(registry)
    registry.mark_exited(old, 0, None)
    registry.mark_exited(fresh, 0, None)

    old.ended_at_ms = (old.ended_at_ms or 0) - 5_000

    assert registry.list_finished() == [fresh]
    assert registry.lookup(old.id) is None


def test_ttl_below_minimum_is_ignored() -> None:
    registry = ProcessRegistry(finished_ttl_ms=10)
    assert registry.finished_ttl_ms == DEFAULT_FINISHED_TTL_MS

    registry.set_finished_ttl_ms(5_000)
    registry.set_finished_ttl_ms(999)
    registry.set_finished_ttl_ms("bogus")  # type: ignore[arg-type]
    assert registry.finished_ttl_ms == 5_000


def test_running_sessions_are_never_pruned() -> None:
    registry = ProcessRegistry(finished_ttl_ms=1_000, max_finished=1)
    session = _registered(registry)
    session.started_at_ms -= 10_000_000

    registry.prune()

    assert registry.list_running() == [session]


def test_drain_returns_only_new_output() -> None:
    registry = ProcessRegistry()
    session = _registered(registry)
    session.push_stdout("a")
    session.push_stderr("x")

    assert registry.drain(session) == ("a", "x", True)
    assert registry.drain(session) == ("", "", False)

    session.push_stdout("b")
    assert registry.drain(session) == ("b", "", True)
    assert session.full_output() == "abx"


def test_summary_reflects_running_and_exited_state() -> None:
    registry = ProcessRegistry()
    session = _registered(registry, scope_key="s1", shell="/bin/sh")

    running = session.summary()
    assert running["running"] is True
    assert running["status"] == "running"
    assert "exit_code" not in running

    registry.mark_exited(session, 3, None)
    done = session.summary()
    assert done["running"] is False
    assert done["status"] == "failed"
    assert done["exit_code"] == 3
    assert done["shell"] == "/bin/sh"


def test_wait_for_exit_times_out_and_wakes_on_exit() -> None:
    registry = ProcessRegistry()
    session = _registered(registry)

    assert wait_for_exit(session, 50, step_ms=10) is False

    timer = threading.Timer(0.1, registry.mark_exited, args=(session, 0, None))
    timer.start()
    try:
        assert wait_for_exit(session, 5_000) is True
    finally:
        timer.cancel()


def test_registry_rejects_invalid_finished_cap() -> None:
    with pytest.raises(ValueError):
        ProcessRegistry(max_finished=0)


@pytest.mark.skipif(os.name == "nt", reason="POSIX shell semantics")
def test_attach_streams_output_and_records_exit(tmp_path: Path) -> None:
    registry = ProcessRegistry()
    seen: list = []
    launched = ProcessLauncher().launch(
        shell=default_shell(), login=False, command="echo out; echo err 1>&2; exit 4", cwd=tmp_path
    )
    session = registry.create_session(command="demo", cwd=str(tmp_path))

    registry.attach(session, launched.handle, on_exit=seen.append)

    assert session.pid == launched.handle.pid
    assert launched.handle.wait_closed(10)
    assert seen == [session]
    assert session.status == "failed"
    assert session.exit_code == 4
    assert session.stdout.text() == "out\n"
    assert session.stderr.text() == "err\n"
    assert registry.get_finished(session.id) is session
