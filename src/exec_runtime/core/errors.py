"""
exec runtime 错误分类（异常类型）。

说明：
- 安全类错误（SecurityViolation/BlockedCommand）是致命的：调用方不应自动重试，
  应根据 message 中给出的变量名/路径自行修正请求。
- 进程级结果（非零退出码、被信号终止）不是异常，而是 `failed/killed` 状态。
- 对外工具返回使用 `ToolResult.error_kind`；异常仅用于模块间控制流与测试断言。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class ExecRuntimeError(Exception):
    """运行时错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可序列化；用于 CLI/工具输出）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(ExecRuntimeError):
    """结构化错误（英文 `code/message/details`）。"""

    error_kind: str = "unknown"

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：一行可读的英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回错误消息本身（单行，直接面向调用方）。"""

        return self.message

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """参数/配置错误。"""

    error_kind = "validation"

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class SecurityViolation(FrameworkError):
    """host 执行时环境变量命中危险清单（LD_PRELOAD/PATH 等）。"""

    error_kind = "permission"

    def __init__(self, message: str, *, key: str) -> None:
        """
        参数：
        - `message`：可读错误信息
        - `key`：触发拦截的环境变量名（保持调用方原始大小写）
        """

        super().__init__(code="SECURITY_VIOLATION", message=message, details={"key": key})
        self.key = key


class BlockedCommand(FrameworkError):
    """self-protection guard 拦截的破坏性命令。"""

    error_kind = "permission"

    def __init__(
        self,
        message: str,
        *,
        command: str,
        target: Optional[str] = None,
        target_absolute: Optional[str] = None,
        protected_path: Optional[str] = None,
        protected_relative: Optional[str] = None,
    ) -> None:
        """
        创建拦截错误。

        参数：
        - `command`：触发拦截的命令片段（segment）
        - `target/target_absolute`：命中的目标（原始 token 与解析后的绝对路径）
        - `protected_path/protected_relative`：命中的受保护路径（绝对形式与相对 install root 的形式）
        """

        super().__init__(
            code="BLOCKED_COMMAND",
            message=message,
            details={
                "command": command,
                "target": target,
                "target_absolute": target_absolute,
                "protected_path": protected_path,
                "protected_relative": protected_relative,
            },
        )
        self.command = command
        self.target = target
        self.target_absolute = target_absolute
        self.protected_path = protected_path
        self.protected_relative = protected_relative


class PtyUnavailable(FrameworkError):
    """要求 PTY（pty=require）但当前主机无法提供。"""

    error_kind = "pty_unavailable"

    def __init__(self, message: str) -> None:
        super().__init__(code="PTY_UNAVAILABLE", message=message)


class WorkingDirectoryInvalid(FrameworkError):
    """工作目录不存在或不是目录。"""

    error_kind = "validation"

    def __init__(self, cwd: str) -> None:
        super().__init__(
            code="WORKING_DIRECTORY_INVALID",
            message=f"Working directory does not exist or is not a directory: {cwd}",
            details={"cwd": cwd},
        )
        self.cwd = cwd


class SessionNotFound(FrameworkError):
    """session 不存在（或不在当前 scope 内）。"""

    error_kind = "not_found"

    def __init__(self, session_id: str, *, active_only: bool = False) -> None:
        prefix = "No active session found for" if active_only else "No session found for"
        super().__init__(
            code="SESSION_NOT_FOUND",
            message=f"{prefix} {session_id}.",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class InvalidSignal(FrameworkError):
    """kill 请求的信号不在允许集合内。"""

    error_kind = "validation"

    def __init__(self, signal_name: str) -> None:
        super().__init__(
            code="INVALID_SIGNAL",
            message=f"Invalid signal '{signal_name}'.",
            details={"signal": signal_name},
        )
        self.signal_name = signal_name


class StdinNotWritable(FrameworkError):
    """session 的 stdin 已关闭或不可写。"""

    error_kind = "validation"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            code="STDIN_NOT_WRITABLE",
            message=f"Session {session_id} stdin is not writable.",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class BackgroundDisabled(FrameworkError):
    """配置禁止后台执行时提交了 background 请求。"""

    error_kind = "permission"

    def __init__(self) -> None:
        super().__init__(code="BACKGROUND_DISABLED", message="Background execution is disabled.")
