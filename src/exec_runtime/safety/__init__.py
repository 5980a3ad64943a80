"""
Safety（环境变量清洗 + self-protection guard）模块。

说明：
- 两者都在进程启动之前执行，失败即拒绝（不会自动重试）；
- 是否允许执行某条命令（approval）不在本模块职责内。
"""

from __future__ import annotations

from exec_runtime.safety.host_env import DANGEROUS_HOST_ENV_PREFIXES, DANGEROUS_HOST_ENV_VARS, validate_host_env
from exec_runtime.safety.self_protection import (
    DEFAULT_SELF_PROTECTED_PATHS,
    MAX_INLINE_SCRIPT_DEPTH,
    ProtectedPathEntry,
    SelfProtectionPolicy,
    TokenPath,
    assert_exec_command_allowed,
    detect_install_root,
    resolve_self_protection_policy,
)
from exec_runtime.safety.shell_tokens import split_segments, tokenize

__all__ = [
    "DANGEROUS_HOST_ENV_PREFIXES",
    "DANGEROUS_HOST_ENV_VARS",
    "DEFAULT_SELF_PROTECTED_PATHS",
    "MAX_INLINE_SCRIPT_DEPTH",
    "ProtectedPathEntry",
    "SelfProtectionPolicy",
    "TokenPath",
    "assert_exec_command_allowed",
    "detect_install_root",
    "resolve_self_protection_policy",
    "split_segments",
    "tokenize",
    "validate_host_env",
]
