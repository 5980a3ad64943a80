"""
Host 执行环境变量清洗（fail-closed）。

说明：
- 仅在执行目标为共享 host（非专用 sandbox）时使用；
- 只校验调用方提供的 env overrides（继承自父进程的 os.environ 不在此校验范围内）；
- 命中第一个违规 key 即拒绝，并在错误信息中给出该 key。
"""

from __future__ import annotations

from typing import Mapping

from exec_runtime.core.errors import SecurityViolation

DANGEROUS_HOST_ENV_VARS = frozenset(
    {
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "LD_AUDIT",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "NODE_OPTIONS",
        "NODE_PATH",
        "PYTHONPATH",
        "PYTHONHOME",
        "RUBYLIB",
        "PERL5LIB",
        "BASH_ENV",
        "ENV",
        "GCONV_PATH",
        "IFS",
        "SSLKEYLOGFILE",
    }
)
DANGEROUS_HOST_ENV_PREFIXES = ("DYLD_", "LD_")


def validate_host_env(env: Mapping[str, str]) -> None:
    """
    校验 host 执行时的环境变量覆盖项。

    参数：
    - env：调用方提供的 env overrides

    异常：
    - `SecurityViolation`：命中危险前缀/危险变量，或试图覆盖 PATH
    """

    for key in env.keys():
        upper = str(key).upper()
        if upper.startswith(DANGEROUS_HOST_ENV_PREFIXES) or upper in DANGEROUS_HOST_ENV_VARS:
            raise SecurityViolation(
                f"Security Violation: Environment variable '{key}' is forbidden during host execution.",
                key=str(key),
            )
        if upper == "PATH":
            raise SecurityViolation(
                "Security Violation: Custom 'PATH' variable is forbidden during host execution.",
                key=str(key),
            )
