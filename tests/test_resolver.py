"""Tests for executable resolution."""

import os
import sys

import pytest

from execgate.exec.resolver import (
    is_windows_platform,
    resolve_command_resolution_from_argv,
    resolve_executable_path,
    unwrap_dispatch_wrappers,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX executable bits")


class TestIsWindowsPlatform:
    def test_values(self):
        assert is_windows_platform("win32")
        assert is_windows_platform("Windows")
        assert not is_windows_platform("linux")
        assert not is_windows_platform("darwin")


@posix_only
class TestResolveExecutablePath:
    def test_bare_name_on_path(self, bin_dir, make_exe):
        exe = make_exe(bin_dir, "mytool")
        assert resolve_executable_path("mytool") == str(exe)

    def test_path_order(self, tmp_path, make_exe, monkeypatch):
        first = make_exe(tmp_path / "a", "tool")
        make_exe(tmp_path / "b", "tool")
        monkeypatch.setenv("PATH", f"{tmp_path / 'a'}:{tmp_path / 'b'}")
        assert resolve_executable_path("tool") == str(first)

    def test_env_override_path_wins(self, tmp_path, bin_dir, make_exe):
        other = make_exe(tmp_path / "other", "tool")
        assert resolve_executable_path("tool", env={"PATH": str(tmp_path / "other")}) == str(other)

    def test_not_executable(self, bin_dir, make_exe):
        make_exe(bin_dir, "plain", mode=0o644)
        assert resolve_executable_path("plain") is None

    def test_directory_is_not_executable(self, bin_dir):
        (bin_dir / "subdir").mkdir()
        assert resolve_executable_path("subdir") is None

    def test_missing(self, bin_dir):
        assert resolve_executable_path("nope") is None

    def test_relative_path_uses_cwd(self, tmp_path, make_exe):
        exe = make_exe(tmp_path / "proj", "run.sh")
        assert resolve_executable_path("./run.sh", cwd=str(tmp_path / "proj")) == str(exe)

    def test_absolute_path_is_normalized(self, tmp_path, make_exe):
        exe = make_exe(tmp_path / "real", "tool")
        dotted = os.path.join(str(tmp_path), "trusted", "..", "real", "tool")
        (tmp_path / "trusted").mkdir()
        assert resolve_executable_path(dotted) == str(exe)

    def test_home_expansion(self, tmp_path, make_exe, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        exe = make_exe(tmp_path / "bin", "hometool")
        assert resolve_executable_path("~/bin/hometool") == str(exe)


class TestWindowsPathext:
    def test_pathext_appended(self, tmp_path):
        exe = tmp_path / "tool.exe"
        exe.write_text("")
        resolved = resolve_executable_path(
            "tool", env={"PATH": str(tmp_path), "PATHEXT": ".EXE;.CMD"}, platform="win32",
        )
        assert resolved == str(exe)

    def test_existing_extension_used_literally(self, tmp_path):
        exe = tmp_path / "tool.cmd"
        exe.write_text("")
        resolved = resolve_executable_path("tool.cmd", env={"PATH": str(tmp_path)}, platform="win32")
        assert resolved == str(exe)


# ── Dispatch wrappers ───────────────────────────────────────────────


class TestUnwrapDispatchWrappers:
    def test_bare_env(self):
        assert unwrap_dispatch_wrappers(["env", "ls", "-la"]) == ["ls", "-la"]

    def test_env_double_dash(self):
        assert unwrap_dispatch_wrappers(["/usr/bin/env", "--", "ls"]) == ["ls"]

    def test_env_with_assignment_not_unwrapped(self):
        argv = ["env", "FOO=bar", "ls"]
        assert unwrap_dispatch_wrappers(argv) == argv

    def test_env_with_option_not_unwrapped(self):
        argv = ["env", "-S", "ls -la"]
        assert unwrap_dispatch_wrappers(argv) == argv

    def test_env_alone(self):
        assert unwrap_dispatch_wrappers(["env"]) == ["env"]

    def test_nested(self):
        assert unwrap_dispatch_wrappers(["env", "env", "ls"]) == ["ls"]


@posix_only
class TestResolveCommandResolution:
    def test_resolution_fields(self, bin_dir, make_exe):
        exe = make_exe(bin_dir, "jq")
        resolution = resolve_command_resolution_from_argv(["jq", "."])
        assert resolution.raw_executable == "jq"
        assert resolution.resolved_path == str(exe)
        assert resolution.executable_name == "jq"
        assert resolution.effective_argv == ["jq", "."]

    def test_unresolved_keeps_raw_name(self, bin_dir):
        resolution = resolve_command_resolution_from_argv(["ghost", "x"])
        assert resolution.resolved_path is None
        assert resolution.executable_name == "ghost"

    def test_env_wrapper_resolves_target(self, bin_dir, make_exe):
        exe = make_exe(bin_dir, "ls")
        make_exe(bin_dir, "env")
        resolution = resolve_command_resolution_from_argv(["env", "ls", "-la"])
        assert resolution.resolved_path == str(exe)
        assert resolution.effective_argv == ["ls", "-la"]

    def test_empty_argv(self):
        assert resolve_command_resolution_from_argv([]) is None
