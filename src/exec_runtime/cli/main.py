"""
exec-runtime CLI（check / env-check / run）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON
"""

from __future__ import annotations

import argparse
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from exec_runtime.config.loader import ExecRuntimeConfig, load_config
from exec_runtime.core.errors import FrameworkError, FrameworkIssue
from exec_runtime.core.exec_service import ExecService
from exec_runtime.safety import assert_exec_command_allowed, validate_host_env
from exec_runtime.tools.builtin import register_builtin_tools
from exec_runtime.tools.protocol import ToolCall, ToolResult
from exec_runtime.tools.registry import ToolExecutionContext, ToolRegistry


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """将 dict 输出为 JSON 到 stdout（末尾包含换行）。"""

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issue_to_jsonable(issue: FrameworkIssue) -> Dict[str, Any]:
    return {"code": issue.code, "message": issue.message, "details": dict(issue.details)}


def _exit_code_for_tool_result(result: ToolResult) -> int:
    """
    将 ToolResult 映射为 CLI exit code。

    约定：
    - ok=true -> 0
    - validation -> 20
    - permission -> 21
    - not_found -> 22
    - timeout -> 25
    - human_required -> 26
    - cancelled -> 27
    - exit_code -> 28
    - 其它/未知 -> 23
    """

    if bool(result.ok):
        return 0
    return {
        "validation": 20,
        "permission": 21,
        "not_found": 22,
        "timeout": 25,
        "human_required": 26,
        "cancelled": 27,
        "exit_code": 28,
    }.get(str(result.error_kind or ""), 23)


def _resolve_workspace_root(raw: str) -> Tuple[Optional[Path], Optional[FrameworkIssue]]:
    """解析 workspace_root；失败时返回 (None, issue)。"""

    ws = Path(raw).expanduser().resolve()
    if not ws.exists() or not ws.is_dir():
        return None, FrameworkIssue(
            code="CLI_WORKSPACE_ROOT_NOT_FOUND",
            message="Workspace root is not found or not a directory.",
            details={"workspace_root": str(ws)},
        )
    return ws, None


def _load_cli_config(workspace_root: Path, raw_paths: List[str]) -> ExecRuntimeConfig:
    """加载 `--config` overlays（相对路径相对 workspace_root）；异常向上抛出。"""

    paths: List[Path] = []
    for raw in raw_paths:
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = workspace_root / p
        paths.append(p.resolve())
    return load_config(paths)


def _parse_env_pairs(pairs: List[str]) -> Dict[str, str]:
    """`KEY=VALUE`（或仅 `KEY`，值为空串）列表 → dict。"""

    out: Dict[str, str] = {}
    for pair in pairs:
        key, _, value = str(pair).partition("=")
        if key:
            out[key] = value
    return out


def _prepare(args: argparse.Namespace) -> Tuple[Optional[ExecService], Optional[FrameworkIssue]]:
    ws, issue = _resolve_workspace_root(str(args.workspace_root))
    if ws is None:
        return None, issue
    try:
        config = _load_cli_config(ws, list(args.config or []))
    except FrameworkError as e:
        return None, e.to_issue()
    return ExecService(config, workspace_root=ws), None


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(prog="exec-runtime", description="Process execution and self-protection tools.")
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    check = sub.add_parser("check", help="Run the self-protection guard against a command (no execution).")
    _add_common_flags(check)
    check.add_argument("--command", dest="command_text", required=True, help="Shell command text.")
    check.add_argument("--cwd", default=None, help="Working directory (default: workspace root).")

    env_check = sub.add_parser("env-check", help="Validate env overrides for host execution.")
    _add_common_flags(env_check)
    env_check.add_argument("--env", action="append", default=[], help="KEY=VALUE (repeatable).")

    run = sub.add_parser("run", help="Run a command in the foreground via the `exec` tool.")
    _add_common_flags(run)
    run.add_argument("--yes", action="store_true", help="Required to execute.")
    run.add_argument("--command", dest="command_text", required=True, help="Shell command text.")
    run.add_argument("--workdir", default=None, help="Working directory.")
    run.add_argument("--timeout", type=float, default=None, help="Timeout in seconds (>=1).")
    run.add_argument("--pty", choices=["off", "prefer", "require"], default=None, help="PTY mode.")
    run.add_argument("--env", action="append", default=[], help="KEY=VALUE (repeatable).")
    run.add_argument("--stdin", default=None, help="Data written to stdin.")
    run.add_argument("--stdin-eof", action="store_true", help="Close stdin after writing.")
    return parser


def _handle_check(args: argparse.Namespace) -> int:
    """执行 `check`：exit 0 = allowed，21 = blocked。"""

    service, issue = _prepare(args)
    if service is None:
        _dump_json_to_stdout({"allowed": False, "issue": _issue_to_jsonable(issue)}, pretty=bool(args.pretty))  # type: ignore[arg-type]
        return 20
    try:
        cwd = str(service.resolve_cwd(args.cwd))
    except FrameworkError as e:
        _dump_json_to_stdout({"allowed": False, "issue": _issue_to_jsonable(e.to_issue())}, pretty=bool(args.pretty))
        return 20
    policy = service.policy
    payload: Dict[str, Any] = {
        "command": args.command_text,
        "cwd": cwd,
        "policy": {
            "enabled": policy.enabled,
            "install_root": policy.install_root,
            "protected_paths": [e.absolute for e in policy.protected_paths],
        },
    }
    try:
        assert_exec_command_allowed(args.command_text, cwd, policy)
    except FrameworkError as e:
        payload.update({"allowed": False, "issue": _issue_to_jsonable(e.to_issue())})
        _dump_json_to_stdout(payload, pretty=bool(args.pretty))
        return 21
    payload.update({"allowed": True, "issue": None})
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0


def _handle_env_check(args: argparse.Namespace) -> int:
    """执行 `env-check`：sandbox 目标下总是通过。"""

    service, issue = _prepare(args)
    if service is None:
        _dump_json_to_stdout({"ok": False, "issue": _issue_to_jsonable(issue)}, pretty=bool(args.pretty))  # type: ignore[arg-type]
        return 20
    env = _parse_env_pairs(list(args.env or []))
    target = service.config.exec.target
    payload: Dict[str, Any] = {"target": target, "keys": sorted(env.keys())}
    if target == "host":
        try:
            validate_host_env(env)
        except FrameworkError as e:
            payload.update({"ok": False, "issue": _issue_to_jsonable(e.to_issue())})
            _dump_json_to_stdout(payload, pretty=bool(args.pretty))
            return 21
    payload.update({"ok": True, "issue": None})
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    """执行 `run`：通过 ToolRegistry 派发 `exec`（前台）。"""

    if not args.yes:
        result = ToolResult.error_payload(
            error_kind="human_required", stderr="--yes is required for this operation", data={"tool": "exec"}
        )
        _dump_json_to_stdout({"tool": "exec", "result": result.details}, pretty=bool(args.pretty))
        return _exit_code_for_tool_result(result)

    service, issue = _prepare(args)
    if service is None:
        result = ToolResult.error_payload(error_kind="validation", stderr=issue.message, data=dict(issue.details))  # type: ignore[union-attr]
        _dump_json_to_stdout({"tool": "exec", "result": result.details}, pretty=bool(args.pretty))
        return _exit_code_for_tool_result(result)

    registry = ToolRegistry(ctx=ToolExecutionContext(service=service))
    register_builtin_tools(registry)
    call_args: Dict[str, Any] = {"command": args.command_text}
    if args.workdir is not None:
        call_args["workdir"] = args.workdir
    if args.timeout is not None:
        call_args["timeout"] = args.timeout
    if args.pty is not None:
        call_args["pty"] = args.pty
    if args.env:
        call_args["env"] = _parse_env_pairs(list(args.env))
    if args.stdin is not None:
        call_args["stdin"] = args.stdin
    if args.stdin_eof:
        call_args["stdin_eof"] = True

    result = registry.dispatch(ToolCall(call_id=f"cli_{uuid.uuid4().hex[:8]}", name="exec", args=call_args))
    _dump_json_to_stdout({"tool": "exec", "result": result.details}, pretty=bool(args.pretty))
    return _exit_code_for_tool_result(result)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "check":
        return _handle_check(args)
    if args.command == "env-check":
        return _handle_env_check(args)
    return _handle_run(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
