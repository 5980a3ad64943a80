"""Tools：协议（ToolSpec/ToolCall/ToolResult）、注册表与内置工具。"""

from __future__ import annotations

from exec_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from exec_runtime.tools.registry import ToolExecutionContext, ToolRegistry

__all__ = ["ToolCall", "ToolExecutionContext", "ToolRegistry", "ToolResult", "ToolResultPayload", "ToolSpec"]
