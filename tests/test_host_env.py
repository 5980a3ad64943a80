from __future__ import annotations

import pytest

from exec_runtime.core.errors import SecurityViolation
from exec_runtime.safety.host_env import validate_host_env


@pytest.mark.parametrize("key", ["LD_PRELOAD", "ld_preload", "DYLD_FALLBACK_LIBRARY_PATH", "LD_WHATEVER", "PYTHONPATH", "BASH_ENV", "IFS"])
def test_validate_host_env_rejects_dangerous_keys(key: str) -> None:
    with pytest.raises(SecurityViolation) as ei:
        validate_host_env({key: "x"})

    assert ei.value.key == key
    assert str(ei.value) == f"Security Violation: Environment variable '{key}' is forbidden during host execution."
    assert ei.value.error_kind == "permission"


def test_validate_host_env_rejects_path_override() -> None:
    with pytest.raises(SecurityViolation, match="Custom 'PATH' variable is forbidden"):
        validate_host_env({"FOO": "1", "Path": "/tmp"})


def test_validate_host_env_allows_plain_keys() -> None:
    validate_host_env({"FOO": "1", "LANG": "C.UTF-8", "MY_LD_FLAG": "x"})
    validate_host_env({})


def test_validate_host_env_reports_first_violation() -> None:
    with pytest.raises(SecurityViolation) as ei:
        validate_host_env({"OK": "1", "NODE_OPTIONS": "--require x", "LD_PRELOAD": "y"})

    assert ei.value.key == "NODE_OPTIONS"
    assert ei.value.to_issue().details == {"key": "NODE_OPTIONS"}
