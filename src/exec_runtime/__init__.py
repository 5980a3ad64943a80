"""
exec_runtime：AI agent 运行时的进程执行与自我保护子系统。

对外入口：
- `ExecService.execute(request)`：前台执行或启动后台 session
- `ProcessControl.control(action, session_id, args)`：后台 session 控制面
- `validate_host_env(env)` / `assert_exec_command_allowed(command, cwd, policy)`：安全检查
"""

from __future__ import annotations

from exec_runtime.config.loader import ExecRuntimeConfig, load_config, load_config_dicts
from exec_runtime.core.exec_service import ExecService, ExecutionRequest, SessionHandle
from exec_runtime.core.executor import ExecutionOutcome
from exec_runtime.core.process_control import ActionResult, ProcessControl
from exec_runtime.safety import (
    SelfProtectionPolicy,
    assert_exec_command_allowed,
    resolve_self_protection_policy,
    validate_host_env,
)

__version__ = "0.1.0"

__all__ = [
    "ActionResult",
    "ExecRuntimeConfig",
    "ExecService",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ProcessControl",
    "SelfProtectionPolicy",
    "SessionHandle",
    "__version__",
    "assert_exec_command_allowed",
    "load_config",
    "load_config_dicts",
    "resolve_self_protection_policy",
    "validate_host_env",
]
