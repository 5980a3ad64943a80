"""
`exec` / `process` 两个内置工具共用的调用与结果模型。

结果统一为 `ToolResult`：`content` 是回注给 agent 的 JSON 文本，`details` 是同一份数据的 dict 形式，
CLI 直接把 `details` 打印到 stdout。
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolSpec(BaseModel):
    """
    工具描述（注册到 `ToolRegistry`，并作为 function calling 的 schema 暴露）。

    字段：
    - parameters：参数的 object JSON Schema
    - requires_approval：执行命令类工具为 true；是否真正拦截由上层 approval 决定
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: Optional[bool] = None


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(BaseModel):
    """
    命令执行类结果的固定字段。

    说明：
    - stdout/stderr/exit_code/truncated 来自前台执行结果；失败时错误说明放在 stderr；
    - 后台 session 与 process 动作的结构化字段放在 data（session_id、status 等）。
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None


class ToolResult(BaseModel):
    """
    工具返回值。

    字段：
    - error_kind：失败时的分类（validation/permission/not_found/pty_unavailable/human_required/unknown）
    - message：失败时的一句话说明；成功时通常为空
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        obj = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(obj, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=obj,
        )

    @classmethod
    def error_payload(
        cls, *, error_kind: str, stderr: str, data: Optional[Dict[str, Any]] = None
    ) -> "ToolResult":
        """失败结果：说明文本同时写入 stderr 与 message。"""

        return cls.from_payload(
            ToolResultPayload(ok=False, stderr=stderr, data=data, error_kind=error_kind),
            message=stderr,
        )
