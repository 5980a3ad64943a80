"""
Self-protection guard：执行前对 shell 文本做静态分析，拦截针对受保护路径的破坏性命令。

说明：
- 这是 heuristic，不是 sandbox：只覆盖少量高危命令形态（rm/mv/find -delete/git reset --hard/...）；
- 位于审批（approval）之下：即使上游已经放行，也会再次校验；
- 拦截时抛出 `BlockedCommand`，包含命令片段、目标路径与命中的受保护路径。

已知局限：
- 含通配符的目标使用双向包含判断，可能误拦与受保护目录共享前缀的合法删除；
- 不做变量/命令替换展开（含 `$(`、`${`、反引号的 token 直接跳过）。
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from exec_runtime.core.errors import BlockedCommand
from exec_runtime.core.utils import is_path_inside, resolve_path_from_base
from exec_runtime.safety.shell_tokens import split_segments, tokenize

logger = logging.getLogger(__name__)

DEFAULT_SELF_PROTECTED_PATHS: Tuple[str, ...] = (
    ".",
    "src/cli",
    "dist/cli",
    "cli",
    "src/bin",
    "dist/bin",
    "bin",
)

# `bash -lc "<script>"` 嵌套的最大递归深度；超出即拦截（fail-closed）。
MAX_INLINE_SCRIPT_DEPTH = 8

_DELETE_COMMANDS = frozenset({"rm", "rmdir", "unlink", "shred", "wipefs", "mkfs"})
_INLINE_SHELLS = frozenset({"bash", "sh", "zsh"})
_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_WILDCARD_RE = re.compile(r"[*?\[\]{}]")
_INSTALL_ROOT_MARKERS = ("pyproject.toml", "setup.cfg", ".git")


@dataclass(frozen=True)
class ProtectedPathEntry:
    """受保护路径条目（raw 配置值 + 解析后的绝对路径）。"""

    raw: str
    absolute: str


@dataclass(frozen=True)
class SelfProtectionPolicy:
    """self-protection 策略（每个上下文构建一次，之后不可变）。"""

    enabled: bool
    install_root: str
    protected_paths: Tuple[ProtectedPathEntry, ...]


@dataclass(frozen=True)
class TokenPath:
    """解析后的位置参数。"""

    raw: str
    absolute: str
    wildcard: bool


def detect_install_root(start: Optional[Path] = None) -> Optional[str]:
    """
    探测 exec_runtime 所在的安装根目录。

    规则：从 start（默认本模块所在目录）向上查找包含 pyproject.toml/setup.cfg/.git 的目录。
    """

    here = Path(start) if start is not None else Path(__file__).resolve().parent
    for parent in (here, *here.parents):
        if any((parent / marker).exists() for marker in _INSTALL_ROOT_MARKERS):
            return str(parent)
    return None


def _dedupe(entries: Iterable[ProtectedPathEntry]) -> Tuple[ProtectedPathEntry, ...]:
    seen: set[str] = set()
    out: List[ProtectedPathEntry] = []
    for entry in entries:
        key = os.path.realpath(entry.absolute)
        if key in seen:
            continue
        seen.add(key)
        out.append(ProtectedPathEntry(raw=entry.raw, absolute=key))
    return tuple(out)


def resolve_self_protection_policy(
    *,
    enabled: bool = True,
    install_root: Optional[str] = None,
    protected_paths: Sequence[str] = (),
    workspace_dir: Optional[str] = None,
) -> SelfProtectionPolicy:
    """
    构建 `SelfProtectionPolicy`。

    参数：
    - enabled：是否启用 guard
    - install_root：安装根目录覆盖值（相对路径相对 workspace_dir）；为空时自动探测
    - protected_paths：受保护路径（相对 install_root）；为空时使用默认列表
    - workspace_dir：工作区目录（默认当前进程 cwd）

    返回：
    - 受保护路径列表总是包含 install_root 本身，并按规范路径去重
    """

    workspace = os.path.realpath(workspace_dir or os.getcwd())
    detected = detect_install_root() or workspace
    root = resolve_path_from_base((install_root or "").strip() or detected, workspace)

    configured = [p.strip() for p in protected_paths if p and p.strip()]
    raw_paths = configured if configured else list(DEFAULT_SELF_PROTECTED_PATHS)
    entries = [ProtectedPathEntry(raw=".", absolute=root)]
    entries.extend(ProtectedPathEntry(raw=raw, absolute=resolve_path_from_base(raw, root)) for raw in raw_paths)
    return SelfProtectionPolicy(enabled=bool(enabled), install_root=root, protected_paths=_dedupe(entries))


def _is_env_assignment(token: str) -> bool:
    return bool(_ENV_ASSIGNMENT_RE.match(token))


def _find_command_index(tokens: List[str]) -> int:
    """跳过 `NAME=value`、`env [flags]`、`sudo [flags]` 前缀，返回实际命令 token 的下标（-1 表示无）。"""

    idx = 0
    n = len(tokens)
    while idx < n and _is_env_assignment(tokens[idx]):
        idx += 1
    if idx >= n:
        return -1

    if tokens[idx] == "env":
        idx += 1
        while idx < n and (tokens[idx].startswith("-") or _is_env_assignment(tokens[idx])):
            idx += 1
    if idx >= n:
        return -1

    if tokens[idx] == "sudo":
        idx += 1
        while idx < n and tokens[idx].startswith("-"):
            idx += 1
        while idx < n and _is_env_assignment(tokens[idx]):
            idx += 1

    return idx if idx < n else -1


def _resolve_token_path(raw: str, cwd: str) -> Optional[TokenPath]:
    token = raw.strip()
    if not token or token.startswith("-"):
        return None
    if "$(" in token or "${" in token or "`" in token:
        return None
    return TokenPath(raw=token, absolute=resolve_path_from_base(token, cwd), wildcard=bool(_WILDCARD_RE.search(token)))


def _format_protected(entry: ProtectedPathEntry, install_root: str) -> Tuple[str, Optional[str]]:
    rel = os.path.relpath(entry.absolute, install_root)
    if rel == os.curdir:
        return entry.absolute, None
    return entry.absolute, rel


def _describe_protected(entry: ProtectedPathEntry, install_root: str) -> str:
    absolute, rel = _format_protected(entry, install_root)
    return absolute if rel is None else f"{absolute} ({rel})"


def _block_if_target_covers_protected(
    *,
    command: str,
    targets: Sequence[TokenPath],
    policy: SelfProtectionPolicy,
) -> None:
    """任一目标与受保护路径存在包含关系（任一方向）即拦截。"""

    for target in targets:
        for entry in policy.protected_paths:
            covers = is_path_inside(target.absolute, entry.absolute)
            inside = is_path_inside(entry.absolute, target.absolute)
            if not (covers or inside):
                continue
            absolute, rel = _format_protected(entry, policy.install_root)
            logger.info("self-protection blocked %r (target=%s, protected=%s)", command, target.absolute, absolute)
            raise BlockedCommand(
                " ".join(
                    [
                        "Blocked destructive command by self-protection policy.",
                        f"Command: {command}",
                        f"Target: {target.raw}",
                        f"Protected path: {_describe_protected(entry, policy.install_root)}",
                    ]
                ),
                command=command,
                target=target.raw,
                target_absolute=target.absolute,
                protected_path=absolute,
                protected_relative=rel,
            )


def _parse_delete_targets(tokens: List[str], command_index: int, cwd: str) -> List[TokenPath]:
    out: List[TokenPath] = []
    passthrough = False
    for token in tokens[command_index + 1 :]:
        if not passthrough and token == "--":
            passthrough = True
            continue
        if not passthrough and token.startswith("-"):
            continue
        resolved = _resolve_token_path(token, cwd)
        if resolved is not None:
            out.append(resolved)
    if not out:
        out.append(TokenPath(raw=".", absolute=os.path.realpath(cwd), wildcard=False))
    return out


def _parse_move_sources(tokens: List[str], command_index: int, cwd: str) -> List[TokenPath]:
    positional: List[str] = []
    passthrough = False
    for token in tokens[command_index + 1 :]:
        if not passthrough and token == "--":
            passthrough = True
            continue
        if not passthrough and token.startswith("-"):
            continue
        positional.append(token)
    if len(positional) <= 1:
        return []
    return [p for p in (_resolve_token_path(raw, cwd) for raw in positional[:-1]) if p is not None]


def _has_flag(tokens: Sequence[str], long_flag: str, short_flag: Optional[str] = None) -> bool:
    """判断 tokens 中是否出现某个 flag（支持 `-fd` 这类组合短参数）。"""

    for token in tokens:
        if token == long_flag or (short_flag is not None and token == short_flag):
            return True
        if short_flag is None or len(short_flag) != 2 or not short_flag.startswith("-"):
            continue
        if token.startswith("-") and not token.startswith("--") and short_flag[1] in token[1:]:
            return True
    return False


def _assert_git_allowed(tokens: List[str], command_index: int, cwd: str, policy: SelfProtectionPolicy) -> None:
    if command_index + 1 >= len(tokens):
        return
    sub = tokens[command_index + 1].lower()
    if sub == "reset" and _has_flag(tokens, "--hard"):
        kind = "reset"
    elif sub == "clean" and _has_flag(tokens, "--force", "-f"):
        kind = "clean"
    else:
        return

    cwd_abs = os.path.realpath(cwd)
    for entry in policy.protected_paths:
        if is_path_inside(entry.absolute, cwd_abs):
            absolute, rel = _format_protected(entry, policy.install_root)
            logger.info("self-protection blocked git %s in %s", kind, cwd_abs)
            raise BlockedCommand(
                f"Blocked destructive git {kind} in protected directory: {_describe_protected(entry, policy.install_root)}",
                command=" ".join(tokens),
                target=cwd,
                target_absolute=cwd_abs,
                protected_path=absolute,
                protected_relative=rel,
            )


def _assert_segment_allowed(segment: str, cwd: str, policy: SelfProtectionPolicy, depth: int) -> None:
    tokens = tokenize(segment)
    if not tokens:
        return
    command_index = _find_command_index(tokens)
    if command_index < 0:
        return

    name = os.path.basename(tokens[command_index]).lower()

    if name in _INLINE_SHELLS:
        for i in range(command_index + 1, len(tokens) - 1):
            if tokens[i] in ("-c", "-lc"):
                script = tokens[i + 1]
                if script.strip():
                    _assert_command(script, cwd, policy, depth + 1)
        return

    if name == "git":
        _assert_git_allowed(tokens, command_index, cwd, policy)
        return

    if name == "find":
        if not any(t.lower() == "-delete" for t in tokens):
            return
        nxt = tokens[command_index + 1] if command_index + 1 < len(tokens) else ""
        root_token = nxt if nxt and not nxt.startswith("-") else "."
        root = _resolve_token_path(root_token, cwd)
        if root is not None:
            _block_if_target_covers_protected(command=segment, targets=[root], policy=policy)
        return

    if name == "mv":
        sources = _parse_move_sources(tokens, command_index, cwd)
        if sources:
            _block_if_target_covers_protected(command=segment, targets=sources, policy=policy)
        return

    if name in _DELETE_COMMANDS:
        targets = _parse_delete_targets(tokens, command_index, cwd)
        _block_if_target_covers_protected(command=segment, targets=targets, policy=policy)


def _assert_command(command: str, cwd: str, policy: SelfProtectionPolicy, depth: int) -> None:
    if depth > MAX_INLINE_SCRIPT_DEPTH:
        raise BlockedCommand(
            f"Blocked command by self-protection policy: inline shell nesting exceeds {MAX_INLINE_SCRIPT_DEPTH} levels.",
            command=command,
        )
    for segment in split_segments(command):
        _assert_segment_allowed(segment, cwd, policy, depth)


def assert_exec_command_allowed(command: str, cwd: str, policy: SelfProtectionPolicy) -> None:
    """
    校验一条 shell 命令文本是否允许执行。

    参数：
    - command：原始 shell 命令文本
    - cwd：命令执行时的工作目录（用于解析相对路径）
    - policy：self-protection 策略；`enabled=False` 时直接放行

    异常：
    - `BlockedCommand`：命中破坏性模式且目标与受保护路径存在包含关系
    """

    if not policy.enabled:
        return
    _assert_command(command, str(cwd), policy, 0)
