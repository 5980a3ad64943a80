"""
内置工具：exec（执行 shell 命令；前台或后台 session）。

说明：
- 前台：运行到结束/超时，返回 stdout/stderr/exit_code/status；
- 后台（background=true）：返回 session_id，后续通过 `process` 工具 poll/log/write/kill；
- 校验/guard 失败映射为 `permission`/`validation`，由 ToolRegistry 统一处理。
"""

from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exec_runtime.core.exec_service import ExecutionRequest, SessionHandle
from exec_runtime.core.executor import ExecutionOutcome
from exec_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from exec_runtime.tools.registry import ToolExecutionContext


class _ExecArgs(BaseModel):
    """exec 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    workdir: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    pty: Optional[Literal["off", "prefer", "require"]] = None
    background: bool = False
    yield_ms: int = Field(default=0, ge=0, le=120_000)
    stdin: Optional[str] = None
    stdin_eof: bool = False
    notify_on_exit: bool = False
    notify_on_exit_empty_success: bool = False
    approval_mode: Optional[str] = None


EXEC_SPEC = ToolSpec(
    name="exec",
    description=(
        "Run a shell command. Foreground runs wait for completion (timeout in seconds); "
        "background runs return a session id for the `process` tool."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to execute."},
            "workdir": {"type": "string", "description": "Working directory (defaults to the workspace)."},
            "env": {
                "type": "object",
                "additionalProperties": {"type": "string"},
                "description": "Environment variable overrides.",
            },
            "timeout": {"type": "number", "minimum": 1, "description": "Foreground timeout in seconds."},
            "pty": {"type": "string", "enum": ["off", "prefer", "require"], "description": "Pseudo-terminal mode."},
            "background": {"type": "boolean", "description": "Run as a background session."},
            "yield_ms": {
                "type": "integer",
                "minimum": 0,
                "maximum": 120000,
                "description": "Background: wait up to this long for early output/exit.",
            },
            "stdin": {"type": "string", "description": "Data written to stdin after start."},
            "stdin_eof": {"type": "boolean", "description": "Close stdin after writing."},
            "notify_on_exit": {"type": "boolean", "description": "Background: emit a notice when the session ends."},
            "notify_on_exit_empty_success": {
                "type": "boolean",
                "description": "Also notify when a session completes with no output.",
            },
            "approval_mode": {"type": "string", "description": "Upstream approval mode (recorded only)."},
        },
        "required": ["command"],
        "additionalProperties": False,
    },
    requires_approval=True,
)


def _outcome_result(outcome: ExecutionOutcome) -> ToolResult:
    data = {
        "status": outcome.status,
        "exit_signal": outcome.exit_signal,
        "timed_out": outcome.timed_out,
        "pty": outcome.pty,
        "pty_warning": outcome.pty_warning,
        "stdout_truncated": outcome.stdout_truncated,
        "stderr_truncated": outcome.stderr_truncated,
        "cwd": outcome.cwd,
    }
    error_kind = None
    if outcome.status == "timeout":
        error_kind = "timeout"
    elif outcome.status == "killed":
        error_kind = "cancelled"
    elif outcome.status == "failed":
        error_kind = "exit_code"
    payload = ToolResultPayload(
        ok=outcome.ok,
        stdout=outcome.stdout,
        stderr=outcome.stderr,
        exit_code=outcome.exit_code,
        duration_ms=outcome.duration_ms,
        truncated=outcome.truncated,
        data=data,
        error_kind=error_kind,
    )
    return ToolResult.from_payload(payload)


def _session_result(handle: SessionHandle) -> ToolResult:
    data = handle.model_dump(exclude={"output", "exit_code"})
    payload = ToolResultPayload(
        ok=True,
        stdout=handle.output,
        exit_code=handle.exit_code,
        data=data,
    )
    return ToolResult.from_payload(payload)


def exec_command(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 exec。

    参数：
    - call：工具调用（args.command/workdir/env/timeout/...）
    - ctx：执行上下文（提供 ExecService 与 scope）
    """

    try:
        args = _ExecArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    request = ExecutionRequest(
        command=args.command,
        workdir=args.workdir,
        env=ctx.merged_env(args.env),
        timeout_sec=args.timeout,
        pty=args.pty,
        background=args.background,
        stdin=args.stdin,
        stdin_eof=args.stdin_eof,
        scope_key=ctx.scope_key,
        approval_mode=args.approval_mode,
        yield_ms=args.yield_ms,
        notify_on_exit=args.notify_on_exit,
        notify_on_exit_empty_success=args.notify_on_exit_empty_success,
    )
    result = ctx.service.execute(request, cancel_checker=ctx.cancel_checker, on_update=ctx.on_update)
    if isinstance(result, SessionHandle):
        return _session_result(result)
    return _outcome_result(result)
