from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import List, Tuple

import pytest

from exec_runtime.core.executor import (
    DEFAULT_KILL_GRACE_MS,
    DEFAULT_MAX_OUTPUT_CHARS,
    Executor,
    clamp_max_output_chars,
    classify_exit,
)

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX shell semantics")


def test_clamp_max_output_chars_bounds() -> None:
    assert clamp_max_output_chars(None) == DEFAULT_MAX_OUTPUT_CHARS
    assert clamp_max_output_chars(10) == 1_000
    assert clamp_max_output_chars(5_000) == 5_000
    assert clamp_max_output_chars(10**9) == 2_000_000


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"exit_code": 0, "exit_signal": None, "timed_out": False}, "completed"),
        ({"exit_code": None, "exit_signal": None, "timed_out": False}, "completed"),
        ({"exit_code": 2, "exit_signal": None, "timed_out": False}, "failed"),
        ({"exit_code": None, "exit_signal": "SIGTERM", "timed_out": False}, "killed"),
        ({"exit_code": 0, "exit_signal": None, "timed_out": False, "cancelled": True}, "killed"),
        ({"exit_code": None, "exit_signal": "SIGKILL", "timed_out": True}, "timeout"),
    ],
)
def test_classify_exit_priority(kwargs: dict, expected: str) -> None:
    assert classify_exit(**kwargs) == expected


def test_run_foreground_captures_stdout_and_stderr(tmp_path: Path) -> None:
    updates: List[Tuple[str, str]] = []
    outcome = Executor().run_foreground(
        command="echo hello; echo oops 1>&2",
        cwd=tmp_path,
        on_update=lambda stream, chunk: updates.append((stream, chunk)),
    )

    assert outcome.status == "completed"
    assert outcome.ok is True
    assert outcome.exit_code == 0
    assert outcome.exit_signal is None
    assert outcome.stdout == "hello\n"
    assert outcome.stderr == "oops\n"
    assert outcome.truncated is False
    assert outcome.cwd == str(tmp_path)
    assert "".join(c for s, c in updates if s == "stdout") == "hello\n"
    assert "".join(c for s, c in updates if s == "stderr") == "oops\n"


def test_run_foreground_nonzero_exit_is_failed_not_exception(tmp_path: Path) -> None:
    outcome = Executor().run_foreground(command="exit 7", cwd=tmp_path)

    assert outcome.status == "failed"
    assert outcome.exit_code == 7
    assert outcome.ok is False


def test_run_foreground_passes_env_and_cwd(tmp_path: Path) -> None:
    env = dict(os.environ)
    env["EXEC_RUNTIME_MARKER"] = "marker-value"

    outcome = Executor().run_foreground(command='echo "$EXEC_RUNTIME_MARKER"; pwd', cwd=tmp_path, env=env)

    lines = outcome.stdout.splitlines()
    assert lines[0] == "marker-value"
    assert lines[1] == os.path.realpath(tmp_path)


def test_run_foreground_timeout_escalates_and_reports_timeout(tmp_path: Path) -> None:
    executor = Executor(kill_grace_ms=200)
    start = time.monotonic()

    outcome = executor.run_foreground(command="echo started; sleep 30", cwd=tmp_path, timeout_sec=1)

    assert time.monotonic() - start < 15
    assert outcome.status == "timeout"
    assert outcome.timed_out is True
    assert outcome.exit_code is None
    assert outcome.exit_signal in ("SIGTERM", "SIGKILL")
    assert outcome.stdout == "started\n"


def test_run_foreground_timeout_floor_is_one_second(tmp_path: Path) -> None:
    outcome = Executor(kill_grace_ms=100).run_foreground(command="sleep 0.3; echo done", cwd=tmp_path, timeout_sec=0.01)

    assert outcome.status == "completed"
    assert outcome.stdout == "done\n"


def test_run_foreground_sigterm_ignored_escalates_to_sigkill(tmp_path: Path) -> None:
    outcome = Executor(kill_grace_ms=200).run_foreground(
        command="trap '' TERM; sleep 30",
        cwd=tmp_path,
        timeout_sec=1,
    )

    assert outcome.status == "timeout"
    assert outcome.exit_signal == "SIGKILL"


def test_run_foreground_default_grace_force_kills_within_two_seconds(tmp_path: Path) -> None:
    start = time.monotonic()

    outcome = Executor().run_foreground(command="trap '' TERM; sleep 30", cwd=tmp_path, timeout_sec=1)

    elapsed = time.monotonic() - start
    assert outcome.status == "timeout"
    assert outcome.exit_signal == "SIGKILL"
    # 超时 1s + 默认宽限 2s，外加少量回收余量
    assert elapsed <= 1.0 + DEFAULT_KILL_GRACE_MS / 1000.0 + 1.5
    assert outcome.duration_ms <= 1_000 + DEFAULT_KILL_GRACE_MS + 1_500


def test_run_foreground_large_stdin_does_not_defeat_timeout(tmp_path: Path) -> None:
    start = time.monotonic()

    outcome = Executor(kill_grace_ms=200).run_foreground(
        command="sleep 6", cwd=tmp_path, timeout_sec=1, stdin="x" * 1_000_000
    )

    assert time.monotonic() - start < 4
    assert outcome.status == "timeout"
    assert outcome.timed_out is True


def test_run_foreground_cancel_checker_kills(tmp_path: Path) -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        outcome = Executor(kill_grace_ms=200).run_foreground(
            command="sleep 30", cwd=tmp_path, timeout_sec=20, cancel_checker=cancel.is_set
        )
    finally:
        timer.cancel()

    assert outcome.status == "killed"
    assert outcome.timed_out is False
    assert outcome.duration_ms < 15_000


def test_run_foreground_cancel_checker_errors_are_ignored(tmp_path: Path) -> None:
    def _boom() -> bool:
        raise RuntimeError("checker failed")

    outcome = Executor().run_foreground(command="echo ok", cwd=tmp_path, cancel_checker=_boom)

    assert outcome.status == "completed"
    assert outcome.stdout == "ok\n"


def test_run_foreground_writes_stdin_and_closes_on_eof(tmp_path: Path) -> None:
    outcome = Executor().run_foreground(command="cat", cwd=tmp_path, stdin="line1\nline2\n", stdin_eof=True)

    assert outcome.status == "completed"
    assert outcome.stdout == "line1\nline2\n"


def test_run_foreground_truncates_each_stream_independently(tmp_path: Path) -> None:
    executor = Executor(max_output_chars=1_000)
    assert executor.max_output_chars == 1_000

    outcome = executor.run_foreground(
        command="i=0; while [ $i -lt 300 ]; do printf 'abcdefghij'; i=$((i+1)); done; echo tiny 1>&2",
        cwd=tmp_path,
    )

    assert outcome.status == "completed"
    assert len(outcome.stdout) == 1_000
    assert outcome.stdout == "abcdefghij" * 100
    assert outcome.stdout_truncated is True
    assert outcome.stderr == "tiny\n"
    assert outcome.stderr_truncated is False
    assert outcome.truncated is True


def test_executor_rejects_negative_grace() -> None:
    with pytest.raises(ValueError):
        Executor(kill_grace_ms=-1)


def test_run_foreground_empty_stdin_acts_as_eof(tmp_path: Path) -> None:
    outcome = Executor().run_foreground(command="cat; echo end", cwd=tmp_path, stdin="", timeout_sec=10)

    assert outcome.status == "completed"
    assert outcome.timed_out is False
    assert outcome.stdout == "end\n"
