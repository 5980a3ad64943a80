"""配置模块（默认配置 + YAML overlays + pydantic 校验）。"""

from __future__ import annotations

from exec_runtime.config.defaults import load_default_config_dict
from exec_runtime.config.loader import (
    ExecConfig,
    ExecRuntimeConfig,
    NotifyConfig,
    SelfProtectionConfig,
    SessionsConfig,
    load_config,
    load_config_dicts,
)

__all__ = [
    "ExecConfig",
    "ExecRuntimeConfig",
    "NotifyConfig",
    "SelfProtectionConfig",
    "SessionsConfig",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
