"""
Process launcher：启动 shell 子进程（可选 PTY 包装），并以串行事件流交付 stdout/stderr/exit。

设计要点：
- 每个 `ProcessHandle` 有两个 reader 线程（stdout/stderr）与一个 dispatcher 线程；
  所有回调只在 dispatcher 线程中执行，因此同一进程的回调严格串行（single-writer）。
- exit 回调总是在两路输出都读到 EOF 且子进程已回收之后才触发。
- PTY 通过 util-linux `script` 包装实现，stdio 仍以普通字节流暴露；
  `script` 是否可用只探测一次，结果缓存在 launcher 实例上（便于测试重置）。
- POSIX 下子进程成为新的 session leader，信号按进程组投递，避免子孙进程残留。
"""

from __future__ import annotations

import codecs
import logging
import os
import queue
import shlex
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Literal, Mapping, Optional, Tuple

from exec_runtime.core.errors import PtyUnavailable

logger = logging.getLogger(__name__)

PtyMode = Literal["off", "prefer", "require"]
StreamCallback = Callable[[str], None]
ExitCallback = Callable[[Optional[int], Optional[str]], None]

PTY_UNAVAILABLE_WARNING = "PTY requested but unavailable; command ran without PTY."
_POWERSHELL_NAMES = frozenset({"pwsh", "powershell", "pwsh.exe", "powershell.exe"})
_READ_CHUNK = 4096


def default_shell() -> str:
    """返回平台默认 shell（POSIX：/bin/sh；Windows：powershell）。"""

    if os.name == "nt":
        return "powershell"
    if Path("/bin/sh").exists():
        return "/bin/sh"
    return shutil.which("sh") or "sh"


def resolve_shell_args(*, shell: str, login: bool, command: str) -> List[str]:
    """
    构建 shell 参数。

    - POSIX shell：`-lc <command>` / `-c <command>`
    - PowerShell：`-Login -NoLogo -Command <command>` / `-NoLogo -Command <command>`
    """

    base = os.path.basename(shell).lower()
    if base in _POWERSHELL_NAMES:
        return ["-Login", "-NoLogo", "-Command", command] if login else ["-NoLogo", "-Command", command]
    return ["-lc", command] if login else ["-c", command]


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class ProcessHandle:
    """
    子进程句柄（拥有 Popen 与读/派发线程）。

    说明：
    - `start(...)` 只能调用一次；调用前子进程的输出会暂存在管道中；
    - `wait_closed()` 等待 exit 回调执行完毕（即所有输出都已交付）；
    - stdin 写入由独立的 writer 线程按序完成，`feed_stdin` 从不阻塞调用方。
    """

    def __init__(self, proc: "subprocess.Popen[bytes]") -> None:
        self._proc = proc
        self._events: "queue.Queue[Tuple[str, Optional[bytes]]]" = queue.Queue()
        self._closed = threading.Event()
        self._stdin_lock = threading.Lock()
        self._stdin_queue: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._stdin_eof_queued = False
        self._stdin_broken = False
        self._writer: Optional[threading.Thread] = None
        self._started = False
        self.exit_code: Optional[int] = None
        self.exit_signal: Optional[str] = None

    @property
    def pid(self) -> Optional[int]:
        return getattr(self._proc, "pid", None)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self, *, on_stdout: StreamCallback, on_stderr: StreamCallback, on_exit: ExitCallback) -> None:
        """启动 reader/dispatcher 线程。"""

        if self._started:
            raise RuntimeError("process handle already started")
        self._started = True
        for name, stream in (("stdout", self._proc.stdout), ("stderr", self._proc.stderr)):
            t = threading.Thread(target=self._read_stream, args=(name, stream), daemon=True)
            t.start()
        dispatcher = threading.Thread(
            target=self._dispatch, args=(on_stdout, on_stderr, on_exit), daemon=True, name=f"exec-dispatch-{self.pid}"
        )
        dispatcher.start()

    def _read_stream(self, name: str, stream: Optional[object]) -> None:
        """读取单路输出并投递到事件队列（在 reader 线程中运行）。"""

        if stream is None:
            self._events.put((name, None))
            return
        try:
            while True:
                try:
                    chunk = stream.read(_READ_CHUNK)  # type: ignore[attr-defined]
                except (OSError, ValueError):
                    break
                if not chunk:
                    break
                self._events.put((name, chunk))
        finally:
            self._events.put((name, None))
            try:
                stream.close()  # type: ignore[attr-defined]
            except OSError:
                pass

    def _dispatch(self, on_stdout: StreamCallback, on_stderr: StreamCallback, on_exit: ExitCallback) -> None:
        decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        callbacks = {"stdout": on_stdout, "stderr": on_stderr}
        open_streams = {"stdout", "stderr"}

        def _deliver(name: str, text: str) -> None:
            if not text:
                return
            try:
                callbacks[name](text)
            except Exception:
                logger.exception("exec stream callback failed (pid=%s, stream=%s)", self.pid, name)

        while open_streams:
            name, chunk = self._events.get()
            if chunk is None:
                open_streams.discard(name)
                _deliver(name, decoders[name].decode(b"", final=True))
                continue
            _deliver(name, decoders[name].decode(chunk))

        rc = self._proc.wait()
        if rc is not None and rc < 0:
            self.exit_code, self.exit_signal = None, signal_name(-rc)
        else:
            self.exit_code, self.exit_signal = rc, None
        logger.debug("process exited (pid=%s, code=%s, signal=%s)", self.pid, self.exit_code, self.exit_signal)
        try:
            on_exit(self.exit_code, self.exit_signal)
        except Exception:
            logger.exception("exec exit callback failed (pid=%s)", self.pid)
        finally:
            self._closed.set()

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """等待 exit 回调执行完毕；返回是否已关闭。"""

        return self._closed.wait(timeout)

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    @property
    def stdin_writable(self) -> bool:
        stdin = self._proc.stdin
        if stdin is None or stdin.closed or self._stdin_eof_queued or self._stdin_broken:
            return False
        return self._proc.poll() is None

    def feed_stdin(self, data: Optional[str], *, eof: bool = False) -> int:
        """
        把数据排入 stdin 写入队列（utf-8）；立即返回排队的字节数。

        说明：
        - 实际写入在 writer 线程中按排队顺序进行，子进程不读 stdin 时调用方也不会被阻塞；
        - eof=true 时在此前排队的数据写完之后关闭 stdin；
        - 写入失败（对端已退出）只记录 debug 日志，并丢弃剩余排队数据。

        异常：
        - ValueError：stdin 不可用，或已排入 EOF
        """

        if self._proc.stdin is None:
            raise ValueError("stdin is not available")
        payload = data.encode("utf-8", errors="replace") if data else b""
        with self._stdin_lock:
            if self._stdin_eof_queued:
                raise ValueError("stdin is already closed")
            if payload:
                self._stdin_queue.put(payload)
            if eof:
                self._stdin_queue.put(None)
                self._stdin_eof_queued = True
            if self._writer is None and (payload or eof):
                self._writer = threading.Thread(
                    target=self._write_loop, daemon=True, name=f"exec-stdin-{self.pid}"
                )
                self._writer.start()
        return len(payload)

    def close_stdin(self) -> None:
        """在已排队数据写完后关闭 stdin；重复调用被忽略。"""

        try:
            self.feed_stdin(None, eof=True)
        except ValueError:
            pass

    def _write_loop(self) -> None:
        stdin = self._proc.stdin
        assert stdin is not None
        while True:
            item = self._stdin_queue.get()
            if item is None:
                break
            try:
                view = memoryview(item)
                while view:
                    n = stdin.write(view)
                    if n is None:
                        continue
                    view = view[n:]
                stdin.flush()
            except (OSError, ValueError):
                logger.debug("stdin write failed (pid=%s)", self.pid, exc_info=True)
                self._stdin_broken = True
                break
        try:
            stdin.close()
        except OSError:
            pass

    def send_signal(self, name: str) -> bool:
        """
        按信号名投递信号（POSIX 优先投递到进程组）。

        返回：
        - 是否成功投递（进程已不存在时返回 False）
        """

        if os.name == "nt":
            try:
                if name == "SIGKILL":
                    self._proc.kill()
                else:
                    self._proc.terminate()
                return True
            except OSError:
                return False

        signum = getattr(signal, name)
        pid = self.pid
        if pid:
            try:
                os.killpg(pid, signum)
                return True
            except (ProcessLookupError, PermissionError):
                pass
        if self._proc.poll() is not None:
            return False
        try:
            self._proc.send_signal(signum)
            return True
        except ProcessLookupError:
            return False

    def terminate(self) -> bool:
        return self.send_signal("SIGTERM")

    def kill(self) -> bool:
        return self.send_signal("SIGKILL")


@dataclass
class LaunchResult:
    """launch 结果：句柄 + 是否实际使用了 PTY + 降级提示。"""

    handle: ProcessHandle
    pty: bool
    pty_warning: Optional[str] = None


class ProcessLauncher:
    """
    Shell 进程启动器。

    参数：
    - script_path：PTY 包装器路径（默认从 PATH 查找 `script`）
    - platform：平台标识（默认 `sys.platform`；测试可注入）
    """

    def __init__(self, *, script_path: Optional[str] = None, platform: Optional[str] = None) -> None:
        self._script_path = script_path
        self._platform = platform or sys.platform
        self._pty_available: Optional[bool] = None
        self._pty_warned = False

    def pty_available(self) -> bool:
        """探测 PTY 包装器是否可用（结果缓存在实例上）。"""

        if self._platform.startswith("win"):
            return False
        if self._pty_available is None:
            path = self._script_path or shutil.which("script")
            self._script_path = path
            self._pty_available = bool(path)
        return self._pty_available

    def reset_pty_probe(self) -> None:
        self._pty_available = None
        self._pty_warned = False

    def build_argv(
        self, *, shell: str, login: bool, command: str, pty_mode: PtyMode = "off"
    ) -> Tuple[List[str], bool, Optional[str]]:
        """
        构建最终 argv。

        返回：
        - (argv, pty, pty_warning)

        异常：
        - `PtyUnavailable`：pty_mode=require 且包装器不可用
        """

        shell_args = resolve_shell_args(shell=shell, login=login, command=command)
        plain = [shell, *shell_args]
        if pty_mode == "off":
            return plain, False, None

        if not self.pty_available():
            if pty_mode == "require":
                raise PtyUnavailable("PTY requested but util-linux `script` is unavailable on this host.")
            if not self._pty_warned:
                self._pty_warned = True
                logger.warning("PTY requested but `script` is unavailable; falling back to plain pipes")
            return plain, False, PTY_UNAVAILABLE_WARNING

        script = str(self._script_path)
        if self._platform == "darwin":
            # BSD script：script -q <file> <cmd...>
            return [script, "-q", "/dev/null", *plain], True, None
        wrapped = " ".join(shlex.quote(arg) for arg in plain)
        return [script, "-qefc", wrapped, "/dev/null"], True, None

    def launch(
        self,
        *,
        shell: str,
        login: bool,
        command: str,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        pty_mode: PtyMode = "off",
    ) -> LaunchResult:
        """
        启动 shell 子进程（stdin/stdout/stderr 均为管道）。

        参数：
        - shell/login/command：shell 可执行文件、是否 login shell、命令文本
        - cwd：工作目录（调用方负责校验存在性）
        - env：完整环境变量（为 None 时继承父进程）
        - pty_mode：off|prefer|require

        异常：
        - `PtyUnavailable`：见 `build_argv`
        - OSError：spawn 失败（例如 shell 不存在）
        """

        argv, use_pty, warning = self.build_argv(shell=shell, login=login, command=command, pty_mode=pty_mode)
        popen_kwargs: dict = {
            "cwd": str(cwd),
            "env": dict(env) if env is not None else None,
            "stdin": subprocess.PIPE,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
            "bufsize": 0,
        }
        if os.name != "nt":
            popen_kwargs["start_new_session"] = True
        else:
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]

        proc = subprocess.Popen(argv, **popen_kwargs)  # noqa: S603
        logger.debug("spawned pid=%s pty=%s argv0=%s cwd=%s", proc.pid, use_pty, argv[0], cwd)
        return LaunchResult(handle=ProcessHandle(proc), pty=use_pty, pty_warning=warning)
