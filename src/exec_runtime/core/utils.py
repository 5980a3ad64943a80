"""共享工具函数（路径解析/时间戳）。"""
from __future__ import annotations

import os
import time
from datetime import datetime, timezone


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    """返回当前 wall-clock 毫秒时间戳。"""
    return int(time.time() * 1000)


def expand_home(raw: str) -> str:
    """展开 `~` 与 `~/...`；其它形式（例如 `~user`）原样返回。"""

    trimmed = raw.strip()
    if trimmed == "~":
        return os.path.expanduser("~")
    if trimmed.startswith("~/"):
        return os.path.join(os.path.expanduser("~"), trimmed[2:])
    return trimmed


def resolve_path_from_base(raw: str, base_dir: str) -> str:
    """
    将 raw 解析为规范化的绝对路径（相对路径相对 base_dir）。

    说明：
    - 使用 realpath，使 symlink 与受保护路径比较时口径一致；
    - 路径不存在时 realpath 仍会返回规范化结果（不会抛异常）。
    """

    expanded = expand_home(raw)
    if os.path.isabs(expanded):
        return os.path.realpath(expanded)
    return os.path.realpath(os.path.join(base_dir, expanded))


def is_path_inside(root: str, target: str) -> bool:
    """判断 target 是否等于 root 或位于 root 之下（纯路径计算，不访问文件系统）。"""

    try:
        rel = os.path.relpath(os.path.abspath(target), os.path.abspath(root))
    except ValueError:
        # Windows：不同盘符之间不存在包含关系
        return False
    if rel == os.curdir:
        return True
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep) and not os.path.isabs(rel)
