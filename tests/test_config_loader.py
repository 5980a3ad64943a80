from __future__ import annotations

from pathlib import Path

import pytest

from exec_runtime.config import load_config, load_config_dicts, load_default_config_dict
from exec_runtime.config.loader import ExecRuntimeConfig, _deep_merge
from exec_runtime.core.errors import UserError


def test_embedded_defaults_match_model_defaults() -> None:
    raw = load_default_config_dict()

    assert raw["config_version"] == 1
    assert load_config_dicts([]) == ExecRuntimeConfig()


def test_default_values() -> None:
    config = load_config_dicts([])

    assert config.exec.target == "host"
    assert config.exec.shell is None
    assert config.exec.default_timeout_sec == 1800
    assert config.exec.max_output_chars == 200_000
    assert config.exec.pty_mode == "off"
    assert config.exec.allow_background is True
    assert config.sessions.finished_ttl_ms == 900_000
    assert config.sessions.max_finished == 64
    assert config.self_protection.enabled is True
    assert config.self_protection.protected_paths == []
    assert config.notify.tail_chars == 400
    assert config.notify.snippet_chars == 180


def test_deep_merge_overrides_leaves_and_replaces_lists() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
    _deep_merge(base, {"a": {"c": [3]}, "e": {"f": 2}})

    assert base == {"a": {"b": 1, "c": [3]}, "d": 1, "e": {"f": 2}}


def test_overlays_merge_in_order(tmp_path: Path) -> None:
    first = tmp_path / "first.yaml"
    first.write_text("exec:\n  target: sandbox\n  default_timeout_sec: 30\n", encoding="utf-8")
    second = tmp_path / "second.yaml"
    second.write_text("exec:\n  default_timeout_sec: 90\nself_protection:\n  protected_paths: [bin]\n", encoding="utf-8")

    config = load_config([first, second])

    assert config.exec.target == "sandbox"
    assert config.exec.default_timeout_sec == 90
    assert config.exec.max_output_chars == 200_000
    assert config.self_protection.protected_paths == ["bin"]


def test_empty_overlay_file_is_allowed(tmp_path: Path) -> None:
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")

    assert load_config([empty]) == ExecRuntimeConfig()


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(UserError) as ei:
        load_config_dicts([{"self_protection": {"enabeld": False}}])

    assert ei.value.code == "CONFIG_INVALID"
    assert ei.value.error_kind == "validation"
    assert ei.value.details["errors"][0]["loc"] == ["self_protection", "enabeld"]


@pytest.mark.parametrize(
    "overlay",
    [
        {"exec": {"target": "cloud"}},
        {"exec": {"pty_mode": "always"}},
        {"exec": {"login": "yes"}},
        {"sessions": {"finished_ttl_ms": 10}},
        {"exec": {"default_timeout_sec": 0}},
    ],
)
def test_invalid_values_are_rejected(overlay: dict) -> None:
    with pytest.raises(UserError) as ei:
        load_config_dicts([overlay])
    assert ei.value.code == "CONFIG_INVALID"


def test_missing_and_non_mapping_files(tmp_path: Path) -> None:
    with pytest.raises(UserError) as missing:
        load_config([tmp_path / "nope.yaml"])
    assert missing.value.code == "CONFIG_NOT_FOUND"

    listy = tmp_path / "list.yaml"
    listy.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(UserError) as bad:
        load_config([listy])
    assert bad.value.code == "CONFIG_INVALID"


def test_include_defaults_false_uses_model_defaults_only() -> None:
    config = load_config_dicts([{"exec": {"shell": "/bin/bash"}}], include_defaults=False)

    assert config.exec.shell == "/bin/bash"
    assert config.sessions.max_finished == 64
