from __future__ import annotations

import os
import shlex
from pathlib import Path

import pytest

from exec_runtime.core.errors import BlockedCommand
from exec_runtime.safety.self_protection import (
    DEFAULT_SELF_PROTECTED_PATHS,
    SelfProtectionPolicy,
    assert_exec_command_allowed,
    detect_install_root,
    resolve_self_protection_policy,
)


def _layout(tmp_path: Path) -> tuple[Path, Path, SelfProtectionPolicy]:
    """tmp_path/app 作为安装根；tmp_path/work 作为普通工作目录。"""

    app = tmp_path / "app"
    (app / "bin").mkdir(parents=True)
    work = tmp_path / "work"
    work.mkdir()
    policy = resolve_self_protection_policy(install_root=str(app), workspace_dir=str(tmp_path))
    return app, work, policy


def _blocked(command: str, cwd: Path, policy: SelfProtectionPolicy) -> BlockedCommand:
    with pytest.raises(BlockedCommand) as ei:
        assert_exec_command_allowed(command, str(cwd), policy)
    return ei.value


def test_policy_always_contains_install_root_first(tmp_path: Path) -> None:
    app, _, policy = _layout(tmp_path)

    assert policy.enabled is True
    assert policy.install_root == os.path.realpath(app)
    assert policy.protected_paths[0].raw == "."
    assert policy.protected_paths[0].absolute == os.path.realpath(app)
    # "." 与 install root 重复，去重后只剩默认列表中的其它条目
    assert len(policy.protected_paths) == len(DEFAULT_SELF_PROTECTED_PATHS)


def test_policy_dedupes_equivalent_paths(tmp_path: Path) -> None:
    app = tmp_path / "app"
    app.mkdir()
    policy = resolve_self_protection_policy(
        install_root="app",
        protected_paths=[".", "./", "bin", "bin/", "  "],
        workspace_dir=str(tmp_path),
    )

    assert [e.absolute for e in policy.protected_paths] == [
        os.path.realpath(app),
        os.path.realpath(app / "bin"),
    ]


def test_detect_install_root_walks_up_to_marker(tmp_path: Path) -> None:
    root = tmp_path / "proj"
    nested = root / "a" / "b"
    nested.mkdir(parents=True)
    (root / "pyproject.toml").write_text("[project]\nname = 'x'\n", encoding="utf-8")

    assert detect_install_root(nested) == str(root)


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf ../app",
        "rm -rf /",
        "rm -rf ../app/bin/tool",
        "echo hi && rm -rf ../app",
        "sudo -n rm -rf ../app",
        "env -i FOO=1 rm -rf ../app",
        "FOO=1 rm ../app/README.md",
        "rmdir ../app/bin",
        "unlink ../app/cli",
        "/bin/rm -r -- ../app",
        "find .. -delete",
        "mv ../app /tmp/elsewhere",
    ],
)
def test_destructive_commands_targeting_protected_paths_are_blocked(tmp_path: Path, command: str) -> None:
    _, work, policy = _layout(tmp_path)

    err = _blocked(command, work, policy)

    assert err.error_kind == "permission"
    assert str(err).startswith("Blocked destructive command by self-protection policy.")


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf build",
        "rm -rf ./node_modules dist",
        "find . -name '*.pyc'",
        "find build -delete",
        "mv notes.txt ../app/",
        "git reset --hard",
        "git clean -fd",
        "ls ../app && cat ../app/README.md",
        'rm "${TARGET}"',
        "echo 'rm -rf ../app'",
        "",
    ],
)
def test_safe_commands_are_allowed(tmp_path: Path, command: str) -> None:
    _, work, policy = _layout(tmp_path)

    assert_exec_command_allowed(command, str(work), policy)


def test_block_message_names_segment_target_and_protected_path(tmp_path: Path) -> None:
    app = tmp_path / "app"
    app.mkdir()
    shared = tmp_path / "shared"
    shared.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    policy = resolve_self_protection_policy(
        install_root=str(app), protected_paths=["../shared"], workspace_dir=str(tmp_path)
    )

    err = _blocked("ls; rm -rf ../shared", work, policy)

    shared_abs = os.path.realpath(shared)
    rel = os.path.join(os.pardir, "shared")
    assert str(err) == (
        "Blocked destructive command by self-protection policy. "
        f"Command: rm -rf ../shared Target: ../shared Protected path: {shared_abs} ({rel})"
    )
    assert err.protected_path == shared_abs
    assert err.protected_relative == rel
    assert err.target_absolute == shared_abs
    assert err.to_issue().details["command"] == "rm -rf ../shared"


def test_block_on_install_root_has_no_relative_suffix(tmp_path: Path) -> None:
    app, work, policy = _layout(tmp_path)

    err = _blocked("rm -rf ../app", work, policy)

    assert err.protected_relative is None
    assert str(err).endswith(f"Protected path: {os.path.realpath(app)}")


def test_wildcard_delete_resolving_into_protected_directory_is_blocked(tmp_path: Path) -> None:
    app, work, policy = _layout(tmp_path)

    _blocked("rm -rf ./*", app / "bin", policy)
    _blocked("rm -rf ../app/*", work, policy)
    assert_exec_command_allowed("rm -rf ./*", str(work), policy)


def test_multiline_script_is_checked_line_by_line(tmp_path: Path) -> None:
    _, work, policy = _layout(tmp_path)

    _blocked("echo hi\nrm -rf ../app", work, policy)
    assert_exec_command_allowed("echo hi\nrm -rf build", str(work), policy)


def test_rm_without_operands_targets_cwd(tmp_path: Path) -> None:
    app, work, policy = _layout(tmp_path)

    _blocked("rm -rf", app / "bin", policy)
    assert_exec_command_allowed("rm -rf", str(work), policy)


def test_inline_shell_scripts_are_checked_recursively(tmp_path: Path) -> None:
    _, work, policy = _layout(tmp_path)

    _blocked("bash -lc 'cd /tmp; rm -rf ../app'", work, policy)
    _blocked('sh -c "zsh -c \\"rm -rf ../app\\""', work, policy)
    assert_exec_command_allowed("bash -lc 'rm -rf build'", str(work), policy)


def test_inline_shell_nesting_beyond_limit_fails_closed(tmp_path: Path) -> None:
    _, work, policy = _layout(tmp_path)

    shallow = "echo hi"
    for _ in range(3):
        shallow = "sh -c " + shlex.quote(shallow)
    assert_exec_command_allowed(shallow, str(work), policy)

    deep = "echo hi"
    for _ in range(10):
        deep = "sh -c " + shlex.quote(deep)
    err = _blocked(deep, work, policy)
    assert "nesting exceeds 8 levels" in str(err)


@pytest.mark.parametrize("command", ["git reset --hard HEAD~1", "git clean -fdx", "git clean --force"])
def test_destructive_git_inside_protected_directory_is_blocked(tmp_path: Path, command: str) -> None:
    app, _, policy = _layout(tmp_path)

    err = _blocked(command, app, policy)

    assert str(err).startswith("Blocked destructive git ")
    assert os.path.realpath(app) in str(err)


def test_non_destructive_git_is_allowed_inside_protected_directory(tmp_path: Path) -> None:
    app, _, policy = _layout(tmp_path)

    for command in ("git status", "git reset HEAD file.txt", "git clean -n", "git log --oneline"):
        assert_exec_command_allowed(command, str(app), policy)


def test_disabled_policy_allows_everything(tmp_path: Path) -> None:
    app = tmp_path / "app"
    app.mkdir()
    policy = resolve_self_protection_policy(enabled=False, install_root=str(app), workspace_dir=str(tmp_path))

    assert_exec_command_allowed("rm -rf /", str(tmp_path), policy)
    assert_exec_command_allowed("git reset --hard", str(app), policy)
