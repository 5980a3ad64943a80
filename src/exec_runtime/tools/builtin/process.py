"""
内置工具：process（管理后台 exec session）。

动作：list/status、poll/wait、log/tail、write/submit/paste、kill/stop、clear/remove。
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exec_runtime.core.process_control import ActionResult, ProcessControl
from exec_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from exec_runtime.tools.registry import ToolExecutionContext


class _ProcessArgs(BaseModel):
    """process 输入参数（数值参数的 clamp 由 ProcessControl 负责）。"""

    model_config = ConfigDict(extra="forbid")

    action: str = Field(default="list")
    session_id: Optional[str] = None
    data: Optional[str] = None
    eof: Optional[bool] = None
    signal: Optional[str] = None
    offset: Optional[float] = None
    limit: Optional[float] = None
    timeout: Optional[float] = None


PROCESS_SPEC = ToolSpec(
    name="process",
    description="Manage exec sessions: list/status, poll/wait, log/tail, write/submit, kill/stop, clear/remove.",
    parameters={
        "type": "object",
        "properties": {
            "action": {"type": "string", "description": "Process action."},
            "session_id": {"type": "string", "description": "Session id for actions other than list."},
            "data": {"type": "string", "description": "Data to write to stdin."},
            "eof": {"type": "boolean", "description": "Close stdin after write/submit."},
            "signal": {"type": "string", "description": "Signal for kill action (e.g., SIGTERM, SIGKILL)."},
            "offset": {"type": "number", "description": "Line offset for log."},
            "limit": {"type": "number", "description": "Line limit for log."},
            "timeout": {"type": "number", "minimum": 0, "maximum": 120000, "description": "Poll wait time (ms)."},
        },
        "required": ["action"],
        "additionalProperties": False,
    },
)


def action_to_tool_result(result: ActionResult) -> ToolResult:
    """把 ActionResult 映射为 ToolResult（文本放 stdout/stderr，details 放 data）。"""

    data = dict(result.details)
    data["action"] = result.action
    if result.ok:
        return ToolResult.from_payload(ToolResultPayload(ok=True, stdout=result.text, data=data))
    return ToolResult.error_payload(error_kind=result.error_kind or "unknown", stderr=result.text, data=data)


def process_tool(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 process 工具。

    参数：
    - call：工具调用（args.action/session_id/...）
    - ctx：执行上下文（注册表来自 ctx.service；scope 来自 ctx.scope_key）
    """

    try:
        args = _ProcessArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    control = ProcessControl(ctx.service.registry, scope_key=ctx.scope_key)
    result = control.control(
        args.action,
        args.session_id,
        args.model_dump(include={"data", "eof", "signal", "offset", "limit", "timeout"}, exclude_none=True),
    )
    return action_to_tool_result(result)
