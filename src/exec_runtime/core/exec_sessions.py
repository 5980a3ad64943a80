"""
Process session registry（后台进程会话的内存注册表）。

设计要点：
- 运行中与已结束的 session 分两张表；进程退出后从 running 移到 finished；
- finished 表有界（超出上限时先淘汰最早结束的），并按 TTL 惰性回收；
- 每个 session 的输出缓冲由 session 自己的锁保护（dispatcher 追加 vs 控制线程 drain）；
- 注册表本身的两张表由注册表锁保护。
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from exec_runtime.core.executor import classify_exit
from exec_runtime.core.launcher import ProcessHandle
from exec_runtime.core.output_capture import SessionStream
from exec_runtime.core.utils import now_ms

logger = logging.getLogger(__name__)

SessionStatus = Literal["spawning", "running", "completed", "failed", "timeout", "killed"]
TERMINAL_STATUSES = frozenset({"completed", "failed", "timeout", "killed"})

DEFAULT_FINISHED_TTL_MS = 15 * 60 * 1000
MIN_FINISHED_TTL_MS = 1000
DEFAULT_MAX_FINISHED = 64
DEFAULT_MAX_BUFFERED_CHARS = 1_000_000
DEFAULT_MAX_BUFFERED_CHUNKS = 3000


@dataclass
class ProcessSession:
    """一个后台（或待后台化）进程会话。"""

    id: str
    command: str
    cwd: str
    stdout: SessionStream
    stderr: SessionStream
    scope_key: Optional[str] = None
    shell: Optional[str] = None
    login: bool = False
    pty: bool = False
    pty_warning: Optional[str] = None
    started_at_ms: int = field(default_factory=now_ms)
    ended_at_ms: Optional[int] = None
    handle: Optional[ProcessHandle] = field(default=None, repr=False)
    pid: Optional[int] = None
    backgrounded: bool = False
    exited: bool = False
    status: SessionStatus = "spawning"
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    notify_on_exit: bool = False
    notify_on_exit_empty_success: bool = False
    exit_notified: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _exited_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def truncated(self) -> bool:
        return self.stdout.truncated or self.stderr.truncated

    def push_stdout(self, chunk: str) -> None:
        with self._lock:
            self.stdout.push(chunk)

    def push_stderr(self, chunk: str) -> None:
        with self._lock:
            self.stderr.push(chunk)

    def full_output(self) -> str:
        """返回缓冲中的完整输出（stdout 在前，stderr 在后）。"""

        with self._lock:
            return self.stdout.text() + self.stderr.text()

    def wait_exited(self, timeout: Optional[float] = None) -> bool:
        return self._exited_event.wait(timeout)

    def summary(self) -> Dict[str, Any]:
        """返回结构化摘要（用于 list/status）。"""

        out: Dict[str, Any] = {
            "session_id": self.id,
            "status": self.status if self.exited else "running",
            "running": not self.exited,
            "pid": self.pid,
            "command": self.command,
            "cwd": self.cwd,
            "shell": self.shell,
            "login": self.login,
            "pty": self.pty,
            "pty_warning": self.pty_warning,
            "started_at_ms": self.started_at_ms,
            "stdout_truncated": self.stdout.truncated,
            "stderr_truncated": self.stderr.truncated,
        }
        if self.exited:
            out["ended_at_ms"] = self.ended_at_ms
            out["exit_code"] = self.exit_code
            out["exit_signal"] = self.exit_signal
        return out


class ProcessRegistry:
    """
    进程会话注册表（线程安全）。

    参数：
    - finished_ttl_ms：已结束 session 的保留时间（小于 1000 时忽略，保持默认）
    - max_finished：finished 表上限（超出时淘汰最早结束的）
    - max_buffered_chars/max_buffered_chunks：每路输出缓冲的上限
    """

    def __init__(
        self,
        *,
        finished_ttl_ms: int = DEFAULT_FINISHED_TTL_MS,
        max_finished: int = DEFAULT_MAX_FINISHED,
        max_buffered_chars: int = DEFAULT_MAX_BUFFERED_CHARS,
        max_buffered_chunks: int = DEFAULT_MAX_BUFFERED_CHUNKS,
    ) -> None:
        if max_finished < 1:
            raise ValueError("max_finished must be >= 1")
        self._running: Dict[str, ProcessSession] = {}
        self._finished: Dict[str, ProcessSession] = {}
        self._lock = threading.Lock()
        self._finished_ttl_ms = DEFAULT_FINISHED_TTL_MS
        self.set_finished_ttl_ms(finished_ttl_ms)
        self._max_finished = max_finished
        self._max_buffered_chars = max_buffered_chars
        self._max_buffered_chunks = max_buffered_chunks

    @property
    def finished_ttl_ms(self) -> int:
        return self._finished_ttl_ms

    def set_finished_ttl_ms(self, ttl_ms: int) -> None:
        """设置 finished TTL；非法值（<1000）被忽略。"""

        try:
            value = int(ttl_ms)
        except (TypeError, ValueError):
            return
        if value < MIN_FINISHED_TTL_MS:
            return
        self._finished_ttl_ms = value

    @staticmethod
    def create_session_id() -> str:
        return f"proc_{uuid.uuid4().hex[:12]}"

    def create_session(
        self,
        *,
        command: str,
        cwd: str,
        scope_key: Optional[str] = None,
        shell: Optional[str] = None,
        login: bool = False,
        pty: bool = False,
        pty_warning: Optional[str] = None,
        backgrounded: bool = True,
    ) -> ProcessSession:
        """创建 session 对象（状态 spawning；尚未注册）。"""

        return ProcessSession(
            id=self.create_session_id(),
            command=command,
            cwd=cwd,
            scope_key=scope_key,
            shell=shell,
            login=login,
            pty=pty,
            pty_warning=pty_warning,
            backgrounded=backgrounded,
            stdout=SessionStream(max_chars=self._max_buffered_chars, max_chunks=self._max_buffered_chunks),
            stderr=SessionStream(max_chars=self._max_buffered_chars, max_chunks=self._max_buffered_chunks),
        )

    def register(self, session: ProcessSession) -> None:
        with self._lock:
            self._prune_locked()
            self._running[session.id] = session

    def attach(
        self,
        session: ProcessSession,
        handle: ProcessHandle,
        *,
        on_exit: Optional[Callable[[ProcessSession], None]] = None,
    ) -> None:
        """
        把进程句柄接入 session：注册、启动事件派发，并把状态推进到 running。

        说明：
        - stdout/stderr 回调写入 session 缓冲；exit 回调调用 `mark_exited`；
        - `on_exit` 在 session 已移入 finished 表之后调用（dispatcher 线程）。
        """

        session.handle = handle
        session.pid = handle.pid
        self.register(session)

        def _on_exit(code: Optional[int], sig: Optional[str]) -> None:
            self.mark_exited(session, code, sig)
            if on_exit is not None:
                on_exit(session)

        with session._lock:
            if session.status == "spawning":
                session.status = "running"
        handle.start(on_stdout=session.push_stdout, on_stderr=session.push_stderr, on_exit=_on_exit)

    def get(self, session_id: str) -> Optional[ProcessSession]:
        """按 id 查找运行中的 session。"""

        with self._lock:
            return self._running.get(session_id)

    def get_finished(self, session_id: str) -> Optional[ProcessSession]:
        with self._lock:
            self._prune_locked()
            return self._finished.get(session_id)

    def lookup(self, session_id: str) -> Optional[ProcessSession]:
        """按 id 查找（running 优先，其次 finished）。"""

        with self._lock:
            self._prune_locked()
            return self._running.get(session_id) or self._finished.get(session_id)

    def list_running(self) -> List[ProcessSession]:
        with self._lock:
            return list(self._running.values())

    def list_finished(self) -> List[ProcessSession]:
        with self._lock:
            self._prune_locked()
            return list(self._finished.values())

    def mark_exited(
        self,
        session: ProcessSession,
        exit_code: Optional[int],
        exit_signal: Optional[str],
        status: Optional[SessionStatus] = None,
    ) -> None:
        """
        标记 session 已结束并移入 finished 表。

        说明：
        - status 为空时按 signal→killed、code 0/None→completed、其它→failed 归类；
        - 终态不可再变更：重复调用被忽略；
        - 只有仍在 running 表中的 session 才会进入 finished 表。
        """

        with session._lock:
            if session.exited:
                return
            session.exited = True
            session.exit_code = exit_code
            session.exit_signal = exit_signal
            session.ended_at_ms = now_ms()
            session.status = status or classify_exit(
                exit_code=exit_code, exit_signal=exit_signal, timed_out=False
            )
        with self._lock:
            # 已被 clear 的 session 不再回到注册表
            if self._running.pop(session.id, None) is not None:
                self._finished[session.id] = session
            self._prune_locked()
        session._exited_event.set()
        logger.debug("session exited (id=%s, status=%s)", session.id, session.status)

    def delete(self, session_id: str) -> bool:
        """从两张表中删除 session（不会向进程发送信号）；返回是否存在。"""

        with self._lock:
            a = self._running.pop(session_id, None)
            b = self._finished.pop(session_id, None)
        return a is not None or b is not None

    def drain(self, session: ProcessSession) -> Tuple[str, str, bool]:
        """
        读取上次 drain 之后的新输出。

        返回：
        - (stdout, stderr, had_new_output)
        """

        with session._lock:
            had_new = session.stdout.offset < len(session.stdout.chunks) or session.stderr.offset < len(
                session.stderr.chunks
            )
            return session.stdout.drain(), session.stderr.drain(), had_new

    def prune(self) -> None:
        with self._lock:
            self._prune_locked()

    def _prune_locked(self) -> None:
        """TTL 回收 + 上限淘汰（调用方必须持有注册表锁）。"""

        cutoff = now_ms() - self._finished_ttl_ms
        expired = [sid for sid, s in self._finished.items() if s.ended_at_ms is not None and s.ended_at_ms <= cutoff]
        for sid in expired:
            del self._finished[sid]
        while len(self._finished) > self._max_finished:
            oldest = next(iter(self._finished))
            del self._finished[oldest]


def wait_for_exit(session: ProcessSession, timeout_ms: int, *, step_ms: int = 200) -> bool:
    """阻塞等待 session 结束（每步最多 step_ms 毫秒）；返回是否已结束。"""

    deadline = time.monotonic() + max(0, timeout_ms) / 1000.0
    while not session.exited:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        session.wait_exited(min(step_ms / 1000.0, remaining))
    return session.exited


__all__ = [
    "DEFAULT_FINISHED_TTL_MS",
    "DEFAULT_MAX_BUFFERED_CHARS",
    "DEFAULT_MAX_BUFFERED_CHUNKS",
    "DEFAULT_MAX_FINISHED",
    "ProcessRegistry",
    "ProcessSession",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "wait_for_exit",
]
