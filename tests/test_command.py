"""Tests for request normalization."""

import pytest

from execgate.exec.command import (
    build_exec_env,
    build_shell_wrapper_argv,
    extract_shell_wrapper_command,
    format_command_text,
    is_cmd_exe_invocation,
    resolve_run_command,
    sanitize_env_overrides,
)


class TestShellWrappers:
    def test_wrapper_argv(self):
        assert build_shell_wrapper_argv("ls", platform="linux") == ["/bin/sh", "-c", "ls"]
        assert build_shell_wrapper_argv("dir", platform="win32") == ["cmd.exe", "/d", "/s", "/c", "dir"]

    @pytest.mark.parametrize("argv,payload", [
        (["sh", "-c", "echo hi"], "echo hi"),
        (["/bin/bash", "-lc", "ls | wc -l"], "ls | wc -l"),
        (["cmd.exe", "/d", "/s", "/c", "dir", "C:\\"], "dir C:\\"),
        (["pwsh", "-Command", "Get-ChildItem"], "Get-ChildItem"),
    ])
    def test_payload(self, argv, payload):
        assert extract_shell_wrapper_command(argv) == payload

    @pytest.mark.parametrize("argv", [["ls", "-c"], ["bash", "script.sh"], []])
    def test_not_a_wrapper(self, argv):
        assert extract_shell_wrapper_command(argv) is None

    def test_wrapper_without_payload(self):
        assert extract_shell_wrapper_command(["sh", "-c"]) == ""

    def test_cmd_exe_detection(self):
        assert is_cmd_exe_invocation(["C:\\Windows\\System32\\CMD.EXE", "/c", "dir"])
        assert not is_cmd_exe_invocation(["sh", "-c", "ls"])


class TestFormatCommandText:
    def test_quotes_when_needed(self):
        assert format_command_text(["echo", "a b", "", "x"]) == 'echo "a b" "" x'


# ── resolve_run_command ─────────────────────────────────────────────


class TestResolveRunCommand:
    def test_string_command(self):
        cmd = resolve_run_command("  ls -la  ", platform="linux")
        assert cmd.ok
        assert cmd.argv == ["/bin/sh", "-c", "ls -la"]
        assert cmd.shell_command == "ls -la"
        assert cmd.cmd_text == "ls -la"

    def test_argv_command(self):
        cmd = resolve_run_command(["git", "commit", "-m", "a msg"])
        assert cmd.ok
        assert cmd.shell_command is None
        assert cmd.cmd_text == 'git commit -m "a msg"'

    def test_argv_wrapper_exposes_payload(self):
        cmd = resolve_run_command(["sh", "-c", "echo a && echo b"])
        assert cmd.shell_command == "echo a && echo b"
        assert cmd.cmd_text == "echo a && echo b"

    @pytest.mark.parametrize("command", ["", "   ", [], ["", " "]])
    def test_command_required(self, command):
        cmd = resolve_run_command(command)
        assert not cmd.ok
        assert cmd.message == "command required"

    def test_raw_command_mismatch(self):
        cmd = resolve_run_command(["sh", "-c", "rm -rf /"], raw_command="ls")
        assert not cmd.ok
        assert cmd.message == "rawCommand does not match command"

    def test_raw_command_match(self):
        assert resolve_run_command(["sh", "-c", "ls"], raw_command="ls").ok

    def test_empty_wrapper(self):
        cmd = resolve_run_command(["bash", "-c", "  "])
        assert not cmd.ok
        assert cmd.message == "shell wrapper requires a command"


# ── Environment ─────────────────────────────────────────────────────


class TestEnvOverrides:
    def test_blocked_keys_dropped(self):
        sanitized = sanitize_env_overrides({
            "PATH": "/evil",
            "LD_PRELOAD": "x.so",
            "dyld_insert_libraries": "x",
            "BASH_FUNC_ls%%": "() { :; }",
            "BAD NAME": "1",
            "FOO": "bar",
        })
        assert sanitized == {"FOO": "bar"}

    def test_nothing_left(self):
        assert sanitize_env_overrides({"PATH": "/x"}) is None
        assert sanitize_env_overrides(None) is None

    def test_build_env_inherits(self, monkeypatch):
        monkeypatch.setenv("EXECGATE_TEST_VAR", "inherited")
        env = build_exec_env({"FOO": "bar"})
        assert env["FOO"] == "bar"
        assert env["EXECGATE_TEST_VAR"] == "inherited"
        assert build_exec_env(None) is None
