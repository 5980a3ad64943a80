"""
内置工具（builtin tools）。

本包提供：
- `exec`：执行 shell 命令（前台/后台）
- `process`：管理后台 session
"""

from __future__ import annotations

from exec_runtime.tools.builtin.exec_command import EXEC_SPEC, exec_command
from exec_runtime.tools.builtin.process import PROCESS_SPEC, process_tool
from exec_runtime.tools.registry import ToolRegistry

__all__ = ["EXEC_SPEC", "PROCESS_SPEC", "exec_command", "process_tool", "register_builtin_tools"]

_BUILTIN_TOOL_ENTRIES = [
    (EXEC_SPEC, exec_command),
    (PROCESS_SPEC, process_tool),
]


def register_builtin_tools(registry: ToolRegistry, *, override: bool = False) -> None:
    """
    注册 builtin tools 集合。

    参数：
    - registry：工具注册表
    - override：是否允许覆盖同名工具（默认 False）
    """

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler, override=override)
