"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 内置默认配置（`exec_runtime/assets/default.yaml`）总是作为第一层；
- 使用 pydantic 做 schema 校验；未知字段直接拒绝（拼写错误的安全开关不应被静默忽略）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

from exec_runtime.config.defaults import load_default_config_dict
from exec_runtime.core.errors import UserError


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ExecConfig(BaseModel):
    """
    执行配置。

    说明：
    - `target=host` 时会对请求的 env overrides 做危险变量校验；`sandbox` 时跳过；
    - `shell` 为空时使用平台默认 shell；
    - `max_output_chars` 在执行器内会被 clamp 到 [1000, 2000000]。
    """

    model_config = ConfigDict(extra="forbid")

    target: Literal["host", "sandbox"] = "host"
    shell: Optional[str] = None
    login: StrictBool = False
    default_timeout_sec: int = Field(default=1800, ge=1)
    max_output_chars: int = Field(default=200_000, ge=1)
    kill_grace_ms: int = Field(default=2000, ge=0)
    pty_mode: Literal["off", "prefer", "require"] = "off"
    allow_background: StrictBool = True
    default_cwd: Optional[str] = None


class SessionsConfig(BaseModel):
    """后台 session 注册表配置。"""

    model_config = ConfigDict(extra="forbid")

    finished_ttl_ms: int = Field(default=15 * 60 * 1000, ge=1000)
    max_finished: int = Field(default=64, ge=1)
    max_buffered_chars: int = Field(default=1_000_000, ge=1)
    max_buffered_chunks: int = Field(default=3000, ge=1)


class SelfProtectionConfig(BaseModel):
    """
    Self-protection 配置。

    说明：
    - `install_root` 为空时自动探测；
    - `protected_paths` 为空时使用内置默认列表（相对 install root 解析）。
    """

    model_config = ConfigDict(extra="forbid")

    enabled: StrictBool = True
    install_root: Optional[str] = None
    protected_paths: List[str] = Field(default_factory=list)


class NotifyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tail_chars: int = Field(default=400, ge=0)
    snippet_chars: int = Field(default=180, ge=1)


class ExecRuntimeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    exec: ExecConfig = Field(default_factory=ExecConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    self_protection: SelfProtectionConfig = Field(default_factory=SelfProtectionConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise UserError(f"Config file not found: {path}", code="CONFIG_NOT_FOUND", details={"path": str(path)})
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UserError(
            f"Config root must be a mapping: {path}", code="CONFIG_INVALID", details={"path": str(path)}
        )
    return data


def load_config_dicts(config_dicts: List[Dict[str, Any]], *, include_defaults: bool = True) -> ExecRuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `ExecRuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为第一层

    异常：
    - `UserError(code=CONFIG_INVALID)`：schema 校验失败（含未知字段）
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    try:
        return ExecRuntimeConfig.model_validate(merged)
    except ValidationError as exc:
        raise UserError(
            f"Invalid config: {exc.errors()[0].get('msg', 'validation error')}",
            code="CONFIG_INVALID",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        ) from exc


def load_config(config_paths: List[Path]) -> ExecRuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `ExecRuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: List[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
