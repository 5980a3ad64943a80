"""
ToolRegistry：工具注册表与派发（dispatch）。

本模块提供：
- 注册：`register/get_spec/list_specs`
- 执行：`dispatch(ToolCall) -> ToolResult`（结构化异常统一映射为 `error_kind`）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from exec_runtime.core.errors import FrameworkError, UserError
from exec_runtime.core.exec_service import ExecService
from exec_runtime.core.executor import UpdateCallback
from exec_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolCall, "ToolExecutionContext"], ToolResult]


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文（派发层注入）。

    字段：
    - service：执行服务（exec/process 共享同一个注册表）
    - scope_key：session 可见范围（process 工具按 key 精确过滤）
    - env：会话级 env（作为 base，tool 参数中的 env 覆盖它）
    - cancel_checker：前台执行的取消信号
    - on_update：前台执行的实时输出回调 `(stream, chunk)`
    """

    service: ExecService
    scope_key: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    cancel_checker: Optional[Callable[[], bool]] = None
    on_update: Optional[UpdateCallback] = None

    def merged_env(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        """
        合并 tool env（ctx.env + extra）。

        说明：
        - 返回值只包含 overrides（不含 os.environ）；host 校验针对的就是这部分。
        """

        base = dict(self.env or {})
        if extra:
            base.update({str(k): str(v) for k, v in extra.items()})
        return base


def error_result(err: FrameworkError) -> ToolResult:
    """把结构化错误映射为失败的 ToolResult。"""

    data = dict(err.details)
    data["code"] = err.code
    return ToolResult.error_payload(error_kind=err.error_kind, stderr=err.message, data=data)


class ToolRegistry:
    """工具注册表。"""

    def __init__(self, *, ctx: ToolExecutionContext) -> None:
        self._ctx = ctx
        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    @property
    def ctx(self) -> ToolExecutionContext:
        return self._ctx

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具。

        参数：
        - override：是否允许覆盖同名工具；默认 False（重复注册抛 UserError）
        """

        name = spec.name
        if name in self._specs and not override:
            raise UserError(f"Tool already registered: {name}", code="TOOL_DUPLICATE")
        self._specs[name] = spec
        self._handlers[name] = handler

    def get_spec(self, name: str) -> ToolSpec:
        """获取工具规格；不存在则抛 `UserError`。"""

        try:
            return self._specs[name]
        except KeyError as e:
            raise UserError(f"Tool not registered: {name}", code="TOOL_NOT_FOUND") from e

    def list_specs(self) -> List[ToolSpec]:
        """按注册顺序返回所有工具规格。"""

        return list(self._specs.values())

    def dispatch(self, call: ToolCall) -> ToolResult:
        """
        派发执行一个 ToolCall。

        说明：
        - handler 抛出的 `FrameworkError` 按其 `error_kind` 映射；
        - spawn 级 OSError 映射为 `unknown`（不重试）。
        """

        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResult.error_payload(
                error_kind="not_found", stderr=f"Tool not registered: {call.name}", data={"tool": call.name}
            )
        try:
            return handler(call, self._ctx)
        except FrameworkError as e:
            logger.debug("tool %s failed: %s", call.name, e.code)
            return error_result(e)
        except OSError as e:
            logger.warning("tool %s spawn failed", call.name, exc_info=True)
            return ToolResult.error_payload(error_kind="unknown", stderr=str(e))
