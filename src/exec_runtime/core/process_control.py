"""
Process Control（后台 session 的控制面：list/status/poll/log/write/kill/clear）。

说明：
- 所有查找失败都以 `ActionResult(ok=False, error_kind=...)` 返回，不抛异常；
- list/status/log 是纯读操作；查找失败不改变任何状态；
- 设置了 scope_key 时，只能看到 scope_key 完全相同的 session。
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from exec_runtime.core.errors import FrameworkError, InvalidSignal, SessionNotFound, StdinNotWritable, UserError
from exec_runtime.core.exec_sessions import ProcessRegistry, ProcessSession, wait_for_exit
from exec_runtime.core.utils import now_ms

logger = logging.getLogger(__name__)

VALID_SIGNALS = frozenset({"SIGTERM", "SIGKILL", "SIGINT", "SIGQUIT", "SIGHUP", "SIGUSR1", "SIGUSR2"})
SUPPORTED_ACTIONS = (
    "list",
    "status",
    "poll",
    "wait",
    "log",
    "tail",
    "write",
    "submit",
    "paste",
    "kill",
    "stop",
    "clear",
    "remove",
)
_ALIASES = {"wait": "poll", "tail": "log", "stop": "kill", "remove": "clear", "submit": "write", "paste": "write"}

MAX_POLL_TIMEOUT_MS = 120_000
POLL_STEP_MS = 200
DEFAULT_LOG_LIMIT = 200
MAX_LOG_LIMIT = 2000
TRUNCATION_NOTE = "\n\n[session output was truncated in buffer]"
UNKNOWN_ACTION_TEXT = (
    "Unknown process action. Use list, status, poll, wait, log, tail, write, submit, paste, kill, stop, clear, or remove."
)

_LINE_SPLIT_RE = re.compile(r"\r?\n")


class ActionResult(BaseModel):
    """
    控制动作结果。

    字段说明：
    - ok：是否成功
    - action：调用方传入的动作名（已归一为小写）
    - text：一行/一段可读文本
    - error_kind：失败分类（validation/not_found/...）
    - details：结构化上下文
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    action: str
    text: str
    error_kind: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


def normalize_signal(raw: Optional[str]) -> str:
    """`term`/`TERM`/`SIGTERM` → `SIGTERM`；空值默认 SIGTERM。"""

    value = str(raw or "SIGTERM").strip().upper()
    if value and not value.startswith("SIG"):
        value = f"SIG{value}"
    return value


def render_session_summary(session: ProcessSession) -> str:
    """`{id} {status} {seconds}s :: {command}`"""

    ended = session.ended_at_ms if session.exited and session.ended_at_ms is not None else now_ms()
    seconds = max(0, round((ended - session.started_at_ms) / 1000))
    status = session.status if session.exited else "running"
    return f"{session.id} {status} {seconds}s :: {session.command}"


def _as_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _truncation_note(session: ProcessSession) -> str:
    return TRUNCATION_NOTE if session.truncated else ""


class ProcessControl:
    """
    后台 session 控制器。

    参数：
    - registry：进程注册表
    - scope_key：可见范围（为空时可见全部 session）
    """

    def __init__(self, registry: ProcessRegistry, *, scope_key: Optional[str] = None) -> None:
        self._registry = registry
        self._scope_key = scope_key or None

    def _in_scope(self, session: Optional[ProcessSession]) -> bool:
        if session is None:
            return False
        if not self._scope_key:
            return True
        return session.scope_key == self._scope_key

    def _running(self, session_id: str) -> Optional[ProcessSession]:
        s = self._registry.get(session_id)
        return s if self._in_scope(s) else None

    def _any(self, session_id: str) -> Optional[ProcessSession]:
        s = self._registry.lookup(session_id)
        return s if self._in_scope(s) else None

    @staticmethod
    def _fail(action: str, err: FrameworkError, **details: Any) -> ActionResult:
        payload = dict(err.details)
        payload.update(details)
        payload.setdefault("status", "failed")
        return ActionResult(ok=False, action=action, text=err.message, error_kind=err.error_kind, details=payload)

    def control(
        self, action: Optional[str], session_id: Optional[str] = None, args: Optional[Mapping[str, Any]] = None
    ) -> ActionResult:
        """
        执行一个控制动作。

        参数：
        - action：list|status|poll|wait|log|tail|write|submit|paste|kill|stop|clear|remove
        - session_id：目标 session（list 以外必填）
        - args：动作参数（data/eof/signal/offset/limit/timeout）
        """

        action_input = str(action or "list").strip().lower() or "list"
        args = dict(args or {})
        canonical = _ALIASES.get(action_input, action_input)

        if canonical == "list":
            return self._list(action_input)
        if canonical not in {"status", "poll", "log", "write", "kill", "clear"}:
            return ActionResult(
                ok=False,
                action=action_input,
                text=UNKNOWN_ACTION_TEXT,
                error_kind="validation",
                details={"status": "failed", "supported_actions": list(SUPPORTED_ACTIONS)},
            )

        sid = str(session_id or "").strip()
        if not sid:
            return self._fail(action_input, UserError("session_id is required for this action."))

        if canonical == "status":
            return self._status(action_input, sid)
        if canonical == "poll":
            return self._poll(action_input, sid, args.get("timeout"))
        if canonical == "log":
            return self._log(action_input, sid, args.get("offset"), args.get("limit"))
        if canonical == "write":
            data = args.get("data")
            return self._write(action_input, sid, "" if data is None else str(data), eof=args.get("eof") is True)
        if canonical == "kill":
            return self._kill(action_input, sid, args.get("signal"))
        return self._clear(action_input, sid)

    def _list(self, action: str) -> ActionResult:
        sessions: List[ProcessSession] = [s for s in self._registry.list_running() if self._in_scope(s)]
        sessions.extend(s for s in self._registry.list_finished() if self._in_scope(s))
        lines = "\n".join(render_session_summary(s) for s in sessions)
        return ActionResult(
            ok=True,
            action=action,
            text=lines or "No running or recent sessions.",
            details={"status": "completed", "sessions": [s.summary() for s in sessions]},
        )

    def _status(self, action: str, sid: str) -> ActionResult:
        target = self._any(sid)
        if target is None:
            return self._fail(action, SessionNotFound(sid))
        summary = target.summary()
        pid = f" pid={target.pid}" if target.pid else ""
        return ActionResult(
            ok=True,
            action=action,
            text=f"{sid} {summary['status']}{pid} :: {target.command}",
            details=summary,
        )

    def _poll(self, action: str, sid: str, timeout: Any) -> ActionResult:
        running = self._running(sid)
        if running is None:
            finished = self._any(sid)
            if finished is None:
                return self._fail(action, SessionNotFound(sid))
            text = (finished.full_output() or "(no output)") + _truncation_note(finished)
            details = self._exit_details(finished)
            details["running"] = False
            return ActionResult(ok=True, action=action, text=text, details=details)

        timeout_ms = max(0, min(MAX_POLL_TIMEOUT_MS, _as_int(timeout, 0)))
        if timeout_ms > 0 and not running.exited:
            wait_for_exit(running, timeout_ms, step_ms=POLL_STEP_MS)

        stdout, stderr, _ = self._registry.drain(running)
        text = (stdout + stderr or "(no new output)") + _truncation_note(running)
        details = self._exit_details(running)
        details["running"] = not running.exited
        return ActionResult(ok=True, action=action, text=text, details=details)

    @staticmethod
    def _exit_details(session: ProcessSession) -> Dict[str, Any]:
        return {
            "status": session.status if session.exited else "running",
            "session_id": session.id,
            "exit_code": session.exit_code,
            "exit_signal": session.exit_signal,
            "stdout_truncated": session.stdout.truncated,
            "stderr_truncated": session.stderr.truncated,
        }

    def _log(self, action: str, sid: str, offset: Any, limit: Any) -> ActionResult:
        target = self._any(sid)
        if target is None:
            return self._fail(action, SessionNotFound(sid))
        lines = _LINE_SPLIT_RE.split(target.full_output())
        start = max(0, _as_int(offset, 0))
        size = max(1, min(MAX_LOG_LIMIT, _as_int(limit, DEFAULT_LOG_LIMIT)))
        window = "\n".join(lines[start : start + size])
        return ActionResult(
            ok=True,
            action=action,
            text=(window or "(no log output)") + _truncation_note(target),
            details={
                "status": "completed",
                "session_id": sid,
                "offset": start,
                "limit": size,
                "total_lines": len(lines),
                "stdout_truncated": target.stdout.truncated,
                "stderr_truncated": target.stderr.truncated,
            },
        )

    def _write(self, action: str, sid: str, data: str, *, eof: bool) -> ActionResult:
        running = self._running(sid)
        if running is None or running.exited:
            return self._fail(action, SessionNotFound(sid, active_only=True))
        handle = running.handle
        payload = f"{data}\n" if action == "submit" else data
        if not payload and not eof:
            return self._fail(action, UserError("data is required for write/submit/paste."), session_id=sid)
        if handle is None or not handle.stdin_writable:
            return self._fail(action, StdinNotWritable(sid))

        if not payload:
            handle.close_stdin()
            return ActionResult(
                ok=True,
                action=action,
                text=f"Closed stdin for {sid}.",
                details={"status": "completed", "session_id": sid, "bytes": 0, "eof": True},
            )
        try:
            written = handle.feed_stdin(payload, eof=eof)
        except ValueError:
            logger.debug("stdin write rejected (session=%s)", sid, exc_info=True)
            return self._fail(action, StdinNotWritable(sid))
        return ActionResult(
            ok=True,
            action=action,
            text=f"Wrote {written} bytes to {sid}.",
            details={"status": "completed", "session_id": sid, "bytes": written, "eof": eof},
        )

    def _kill(self, action: str, sid: str, signal_raw: Any) -> ActionResult:
        running = self._running(sid)
        if running is None or running.exited:
            if self._any(sid) is None:
                return self._fail(action, SessionNotFound(sid), killed=False)
            return ActionResult(
                ok=False,
                action=action,
                text=f"Session {sid} is not running.",
                error_kind="validation",
                details={"status": "failed", "session_id": sid, "killed": False},
            )
        sig = normalize_signal(signal_raw)
        if sig not in VALID_SIGNALS:
            return self._fail(action, InvalidSignal(sig), session_id=sid, killed=False)
        delivered = running.handle.send_signal(sig) if running.handle is not None else False
        logger.info("signal sent (session=%s, signal=%s, delivered=%s)", sid, sig, delivered)
        return ActionResult(
            ok=True,
            action=action,
            text=f"Sent {sig} to {sid}.",
            details={"status": "completed", "session_id": sid, "killed": True, "signal": sig, "delivered": delivered},
        )

    def _clear(self, action: str, sid: str) -> ActionResult:
        removed = False
        if self._any(sid) is not None:
            removed = self._registry.delete(sid)
        return ActionResult(
            ok=True,
            action=action,
            text=f"Removed session {sid} from registry.",
            details={"status": "completed", "session_id": sid, "removed": removed},
        )


__all__ = [
    "ActionResult",
    "ProcessControl",
    "SUPPORTED_ACTIONS",
    "TRUNCATION_NOTE",
    "UNKNOWN_ACTION_TEXT",
    "VALID_SIGNALS",
    "normalize_signal",
    "render_session_summary",
]
