"""
Foreground Executor（前台执行：运行到结束或超时）。

说明：
- 输出按 stdout/stderr 分别捕获（头部保留，超出预算后锁存 truncated）；
- 超时：先 SIGTERM（进程组），宽限期后仍存活则 SIGKILL，状态记为 `timeout`；
- `cancel_checker` 返回 true 时走同样的终止路径，状态记为 `killed`；
- 非零退出码/被信号终止是正常结果，不抛异常；spawn 级 OSError 直接向上抛出。
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from exec_runtime.core.launcher import ProcessHandle, ProcessLauncher, PtyMode, default_shell
from exec_runtime.core.output_capture import OutputCapture

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_CHARS = 200_000
MIN_MAX_OUTPUT_CHARS = 1_000
MAX_MAX_OUTPUT_CHARS = 2_000_000
DEFAULT_KILL_GRACE_MS = 2_000
_WAIT_STEP_SEC = 0.05
_CLOSE_AFTER_KILL_SEC = 5.0

ExecStatus = Literal["completed", "failed", "timeout", "killed"]
UpdateCallback = Callable[[str, str], None]


def clamp_max_output_chars(value: Optional[int]) -> int:
    """把输出上限收敛到 [1000, 2000000]；None 使用默认值 200000。"""

    if value is None:
        return DEFAULT_MAX_OUTPUT_CHARS
    return max(MIN_MAX_OUTPUT_CHARS, min(MAX_MAX_OUTPUT_CHARS, int(value)))


def classify_exit(
    *, exit_code: Optional[int], exit_signal: Optional[str], timed_out: bool, cancelled: bool = False
) -> ExecStatus:
    """按 timeout > killed > completed/failed 的优先级归类结束状态。"""

    if timed_out:
        return "timeout"
    if cancelled or exit_signal:
        return "killed"
    if exit_code is None or exit_code == 0:
        return "completed"
    return "failed"


class ExecutionOutcome(BaseModel):
    """
    前台执行结果（结构化）。

    字段说明：
    - status：completed|failed|timeout|killed
    - exit_code/exit_signal：退出码或终止信号名（二者通常只有一个非空）
    - stdout/stderr：捕获到的输出（头部保留，可能被截断）
    - stdout_truncated/stderr_truncated：各自是否发生截断
    - timed_out：是否因超时被终止
    - pty/pty_warning：是否实际使用 PTY；请求 PTY 但降级时的提示
    """

    model_config = ConfigDict(extra="forbid")

    status: ExecStatus
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    pty: bool = False
    pty_warning: Optional[str] = None
    duration_ms: int = Field(default=0, ge=0)
    cwd: str
    command: str

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated


class Executor:
    """
    前台执行器。

    参数：
    - launcher：进程启动器（共享 PTY 探测缓存）
    - max_output_chars：每路输出的捕获上限（会被 clamp）
    - kill_grace_ms：超时/取消后 SIGTERM→SIGKILL 的宽限时间（毫秒）
    """

    def __init__(
        self,
        *,
        launcher: Optional[ProcessLauncher] = None,
        max_output_chars: Optional[int] = None,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
    ) -> None:
        if kill_grace_ms < 0:
            raise ValueError("kill_grace_ms must be >= 0")
        self._launcher = launcher or ProcessLauncher()
        self._max_output_chars = clamp_max_output_chars(max_output_chars)
        self._kill_grace_ms = kill_grace_ms

    @property
    def launcher(self) -> ProcessLauncher:
        return self._launcher

    @property
    def max_output_chars(self) -> int:
        return self._max_output_chars

    def run_foreground(
        self,
        *,
        command: str,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        shell: Optional[str] = None,
        login: bool = False,
        timeout_sec: float = 60,
        pty_mode: PtyMode = "off",
        stdin: Optional[str] = None,
        stdin_eof: bool = False,
        cancel_checker: Optional[Callable[[], bool]] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> ExecutionOutcome:
        """
        执行一条 shell 命令并等待其结束。

        参数：
        - command/cwd/env：命令文本、工作目录（调用方已校验）、完整环境变量
        - shell/login：shell 可执行文件（默认平台 shell）与是否 login shell
        - timeout_sec：超时秒数（下限 1 秒）
        - stdin/stdin_eof：写入 stdin 的内容；stdin_eof=true（或 stdin 为空串）时写完关闭 stdin
        - cancel_checker：外部取消信号（轮询）
        - on_update：实时输出回调 `(stream, chunk)`（在 dispatcher 线程调用）

        返回：
        - `ExecutionOutcome`

        异常：
        - `PtyUnavailable`：pty_mode=require 且不可用
        - OSError：spawn 失败
        """

        start = time.monotonic()
        timeout_sec = max(1.0, float(timeout_sec))
        max_chars = self._max_output_chars
        stdout_cap = OutputCapture()
        stderr_cap = OutputCapture()
        exit_info: dict = {}

        launched = self._launcher.launch(
            shell=shell or default_shell(),
            login=login,
            command=command,
            cwd=cwd,
            env=env,
            pty_mode=pty_mode,
        )
        handle = launched.handle

        def _on_stdout(chunk: str) -> None:
            stdout_cap.push(chunk, max_chars)
            if on_update is not None:
                on_update("stdout", chunk)

        def _on_stderr(chunk: str) -> None:
            stderr_cap.push(chunk, max_chars)
            if on_update is not None:
                on_update("stderr", chunk)

        def _on_exit(code: Optional[int], sig: Optional[str]) -> None:
            exit_info["code"] = code
            exit_info["signal"] = sig

        handle.start(on_stdout=_on_stdout, on_stderr=_on_stderr, on_exit=_on_exit)

        eof = stdin_eof or stdin == ""
        if stdin or eof:
            try:
                handle.feed_stdin(stdin, eof=eof)
            except ValueError:
                logger.debug("stdin unavailable (pid=%s)", handle.pid, exc_info=True)

        timed_out = False
        cancelled = False
        deadline = start + timeout_sec
        while not handle.wait_closed(_WAIT_STEP_SEC):
            if cancel_checker is not None:
                try:
                    if cancel_checker():
                        cancelled = True
                        break
                except Exception:
                    # fail-open：取消检测异常不应杀死执行器
                    logger.debug("cancel_checker raised; ignoring", exc_info=True)
            if time.monotonic() >= deadline:
                timed_out = True
                break

        if timed_out or cancelled:
            self._terminate(handle)

        duration_ms = int((time.monotonic() - start) * 1000)
        code = exit_info.get("code", handle.exit_code if handle.closed else handle.poll())
        sig = exit_info.get("signal")
        status = classify_exit(exit_code=code, exit_signal=sig, timed_out=timed_out, cancelled=cancelled)
        logger.debug("foreground exec finished (status=%s, code=%s, signal=%s)", status, code, sig)
        return ExecutionOutcome(
            status=status,
            exit_code=code,
            exit_signal=sig,
            stdout=stdout_cap.text(),
            stderr=stderr_cap.text(),
            stdout_truncated=stdout_cap.truncated,
            stderr_truncated=stderr_cap.truncated,
            timed_out=timed_out,
            pty=launched.pty,
            pty_warning=launched.pty_warning,
            duration_ms=duration_ms,
            cwd=str(cwd),
            command=command,
        )

    def _terminate(self, handle: ProcessHandle) -> None:
        """SIGTERM → 宽限期 → SIGKILL；最后有界等待输出交付完毕。"""

        handle.terminate()
        if handle.wait_closed(self._kill_grace_ms / 1000.0):
            return
        handle.kill()
        if not handle.wait_closed(_CLOSE_AFTER_KILL_SEC):
            logger.warning("process output did not close after SIGKILL (pid=%s)", handle.pid)


__all__ = [
    "DEFAULT_KILL_GRACE_MS",
    "DEFAULT_MAX_OUTPUT_CHARS",
    "ExecStatus",
    "ExecutionOutcome",
    "Executor",
    "classify_exit",
    "clamp_max_output_chars",
]
