"""
Exec Service（`execute(request)` 入口：校验 → guard → 前台执行或后台 session）。

执行顺序：
1) 解析工作目录（`~` 展开；相对路径相对默认 cwd）；不存在则 `WorkingDirectoryInvalid`
2) host 目标下校验 env overrides（`validate_host_env`）
3) self-protection guard（`assert_exec_command_allowed`）
4) 前台：`Executor.run_foreground`；后台：spawn + 注册到 `ProcessRegistry`
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from exec_runtime.config.loader import ExecRuntimeConfig
from exec_runtime.core.errors import BackgroundDisabled, WorkingDirectoryInvalid
from exec_runtime.core.exec_sessions import ProcessRegistry, ProcessSession, wait_for_exit
from exec_runtime.core.executor import ExecutionOutcome, Executor, UpdateCallback
from exec_runtime.core.launcher import ProcessLauncher, PtyMode, default_shell
from exec_runtime.core.notifications import Notifier, maybe_notify_on_exit
from exec_runtime.core.utils import resolve_path_from_base
from exec_runtime.safety import (
    SelfProtectionPolicy,
    assert_exec_command_allowed,
    resolve_self_protection_policy,
    validate_host_env,
)

logger = logging.getLogger(__name__)


class ExecutionRequest(BaseModel):
    """
    一次执行请求。

    字段说明：
    - command：shell 命令文本
    - workdir：工作目录（可选）
    - env：环境变量覆盖项（会合并到当前进程环境之上）
    - timeout_sec：前台超时秒数（为空时使用配置；下限 1）
    - pty：off|prefer|require（为空时使用配置）
    - background：是否以后台 session 运行
    - stdin/stdin_eof：启动后写入 stdin 的内容，以及写完是否关闭 stdin
    - scope_key：session 可见范围
    - approval_mode：上游审批模式（仅记录，不参与决策）
    - yield_ms：后台模式下最多等待多久（进程提前结束时直接返回结果）
    - notify_on_exit/notify_on_exit_empty_success：后台结束通知开关
    """

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    workdir: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_sec: Optional[float] = Field(default=None, gt=0)
    pty: Optional[PtyMode] = None
    background: bool = False
    stdin: Optional[str] = None
    stdin_eof: bool = False
    scope_key: Optional[str] = None
    approval_mode: Optional[str] = None
    yield_ms: int = Field(default=0, ge=0, le=120_000)
    notify_on_exit: bool = False
    notify_on_exit_empty_success: bool = False


class SessionHandle(BaseModel):
    """
    后台执行结果（session 句柄）。

    说明：
    - output 为 yield 窗口内产生的输出（已计入 drain offset）；
    - 若进程在 yield 窗口内已结束，status 为终态并带 exit_code/exit_signal。
    """

    model_config = ConfigDict(extra="forbid")

    session_id: str
    status: str
    running: bool
    pid: Optional[int] = None
    pty: bool = False
    pty_warning: Optional[str] = None
    output: str = ""
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    cwd: str
    command: str


ExecResult = Union[ExecutionOutcome, SessionHandle]


class ExecService:
    """
    执行服务（组合 launcher/executor/registry/guard）。

    参数：
    - config：运行时配置
    - workspace_root：工作区目录（默认 cwd；也是相对 workdir 的解析基准）
    - registry/launcher：可注入（测试或多个服务共享注册表）
    - notifier：后台 session 结束通知回调（可选）
    - policy：self-protection 策略（为空时按配置构建一次）
    """

    def __init__(
        self,
        config: Optional[ExecRuntimeConfig] = None,
        *,
        workspace_root: Optional[Path] = None,
        registry: Optional[ProcessRegistry] = None,
        launcher: Optional[ProcessLauncher] = None,
        notifier: Optional[Notifier] = None,
        policy: Optional[SelfProtectionPolicy] = None,
    ) -> None:
        self._config = config or ExecRuntimeConfig()
        self._workspace_root = Path(workspace_root or os.getcwd()).resolve()
        sessions = self._config.sessions
        self._registry = registry or ProcessRegistry(
            finished_ttl_ms=sessions.finished_ttl_ms,
            max_finished=sessions.max_finished,
            max_buffered_chars=sessions.max_buffered_chars,
            max_buffered_chunks=sessions.max_buffered_chunks,
        )
        self._launcher = launcher or ProcessLauncher()
        self._executor = Executor(
            launcher=self._launcher,
            max_output_chars=self._config.exec.max_output_chars,
            kill_grace_ms=self._config.exec.kill_grace_ms,
        )
        self._notifier = notifier
        sp = self._config.self_protection
        self._policy = policy or resolve_self_protection_policy(
            enabled=sp.enabled,
            install_root=sp.install_root,
            protected_paths=sp.protected_paths,
            workspace_dir=str(self._workspace_root),
        )

    @property
    def config(self) -> ExecRuntimeConfig:
        return self._config

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def policy(self) -> SelfProtectionPolicy:
        return self._policy

    def resolve_cwd(self, workdir: Optional[str]) -> Path:
        """
        解析工作目录。

        异常：
        - `WorkingDirectoryInvalid`：路径不存在或不是目录
        """

        base = self._config.exec.default_cwd
        base_dir = resolve_path_from_base(base, str(self._workspace_root)) if base else str(self._workspace_root)
        raw = (workdir or "").strip()
        cwd = resolve_path_from_base(raw, base_dir) if raw else base_dir
        if not os.path.isdir(cwd):
            raise WorkingDirectoryInvalid(cwd)
        return Path(cwd)

    def _merged_env(self, overrides: Dict[str, str]) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in overrides.items()})
        return env

    def execute(
        self,
        request: ExecutionRequest,
        *,
        cancel_checker: Optional[Callable[[], bool]] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> ExecResult:
        """
        执行一次请求。

        返回：
        - 前台：`ExecutionOutcome`
        - 后台：`SessionHandle`

        异常：
        - `WorkingDirectoryInvalid` / `SecurityViolation` / `BlockedCommand`
        - `BackgroundDisabled`：配置禁止后台执行
        - `PtyUnavailable`：pty=require 且不可用
        - OSError：spawn 失败
        """

        cwd = self.resolve_cwd(request.workdir)
        if request.env and self._config.exec.target == "host":
            validate_host_env(request.env)
        assert_exec_command_allowed(request.command, str(cwd), self._policy)

        exec_cfg = self._config.exec
        shell = exec_cfg.shell or default_shell()
        pty_mode: PtyMode = request.pty or exec_cfg.pty_mode
        env = self._merged_env(request.env)
        if request.approval_mode:
            logger.debug("exec approval_mode=%s", request.approval_mode)

        if request.background:
            if not exec_cfg.allow_background:
                raise BackgroundDisabled()
            return self._start_background(request, cwd=cwd, env=env, shell=shell, pty_mode=pty_mode)

        timeout_sec = request.timeout_sec if request.timeout_sec is not None else exec_cfg.default_timeout_sec
        return self._executor.run_foreground(
            command=request.command,
            cwd=cwd,
            env=env,
            shell=shell,
            login=exec_cfg.login,
            timeout_sec=timeout_sec,
            pty_mode=pty_mode,
            stdin=request.stdin,
            stdin_eof=request.stdin_eof,
            cancel_checker=cancel_checker,
            on_update=on_update,
        )

    def _start_background(
        self,
        request: ExecutionRequest,
        *,
        cwd: Path,
        env: Dict[str, str],
        shell: str,
        pty_mode: PtyMode,
    ) -> SessionHandle:
        exec_cfg = self._config.exec
        launched = self._launcher.launch(
            shell=shell, login=exec_cfg.login, command=request.command, cwd=cwd, env=env, pty_mode=pty_mode
        )
        session = self._registry.create_session(
            command=request.command,
            cwd=str(cwd),
            scope_key=request.scope_key,
            shell=shell,
            login=exec_cfg.login,
            pty=launched.pty,
            pty_warning=launched.pty_warning,
            backgrounded=True,
        )
        session.notify_on_exit = request.notify_on_exit
        session.notify_on_exit_empty_success = request.notify_on_exit_empty_success
        self._registry.attach(session, launched.handle, on_exit=self._on_session_exit)
        logger.debug("background session started (id=%s, pid=%s)", session.id, session.pid)

        eof = request.stdin_eof or request.stdin == ""
        if request.stdin or eof:
            try:
                launched.handle.feed_stdin(request.stdin, eof=eof)
            except ValueError:
                logger.debug("stdin unavailable (session=%s)", session.id, exc_info=True)

        if request.yield_ms > 0:
            wait_for_exit(session, request.yield_ms)
        return self._session_handle(session)

    def _on_session_exit(self, session: ProcessSession) -> None:
        notify = self._config.notify
        maybe_notify_on_exit(
            session, self._notifier, tail_chars=notify.tail_chars, snippet_chars=notify.snippet_chars
        )

    def _session_handle(self, session: ProcessSession) -> SessionHandle:
        stdout, stderr, _ = self._registry.drain(session)
        output = stdout + stderr
        status = session.status if session.exited else "running"
        return SessionHandle(
            session_id=session.id,
            status=status,
            running=not session.exited,
            pid=session.pid,
            pty=session.pty,
            pty_warning=session.pty_warning,
            output=output,
            exit_code=session.exit_code,
            exit_signal=session.exit_signal,
            cwd=session.cwd,
            command=session.command,
        )


__all__ = ["ExecResult", "ExecService", "ExecutionRequest", "SessionHandle"]
