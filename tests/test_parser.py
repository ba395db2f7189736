"""Tests for shell command parsing."""

import pytest

from execgate.exec.parser import (
    analyze_argv_command,
    analyze_shell_command,
    split_command_chain,
    split_shell_pipeline,
    tokenize_shell_segment,
    tokenize_windows_segment,
)
from execgate.exec.types import DenyReason


def argvs(analysis):
    return [segment.argv for segment in analysis.segments]


# ── Tokenizer ───────────────────────────────────────────────────────


class TestTokenizeShellSegment:
    def test_plain_words(self):
        assert tokenize_shell_segment("ls -la /tmp") == ["ls", "-la", "/tmp"]

    def test_single_quotes_are_literal(self):
        assert tokenize_shell_segment("echo 'a \\ $HOME'") == ["echo", "a \\ $HOME"]

    def test_double_quote_escapes(self):
        assert tokenize_shell_segment('echo "a \\"b\\" \\n"') == ["echo", 'a "b" \\n']

    def test_backslash_outside_quotes(self):
        assert tokenize_shell_segment("echo a\\ b") == ["echo", "a b"]

    def test_empty_quoted_argument_kept(self):
        assert tokenize_shell_segment("grep '' file") == ["grep", "", "file"]

    def test_adjacent_quotes_join(self):
        assert tokenize_shell_segment("echo 'a'\"b\"c") == ["echo", "abc"]

    def test_unterminated_quote(self):
        assert tokenize_shell_segment("echo 'abc") is None


class TestTokenizeWindowsSegment:
    def test_quotes_toggle(self):
        assert tokenize_windows_segment('dir "C:\\Program Files"') == ["dir", "C:\\Program Files"]

    def test_backslash_is_literal(self):
        assert tokenize_windows_segment("type C:\\a\\b.txt") == ["type", "C:\\a\\b.txt"]

    def test_odd_quotes(self):
        assert tokenize_windows_segment('echo "abc') is None


# ── Chain and pipeline splitting ────────────────────────────────────


class TestSplitCommandChain:
    def test_no_operators(self):
        assert split_command_chain("  ls -la ") == (True, None, ["ls -la"])

    def test_and_and_semicolon(self):
        ok, _, parts = split_command_chain("a && b; c")
        assert ok
        assert parts == ["a", "b", "c"]

    def test_operators_inside_quotes(self):
        ok, _, parts = split_command_chain("echo 'a && b' \"c; d\"")
        assert ok
        assert parts == ["echo 'a && b' \"c; d\""]

    def test_or_is_rejected(self):
        ok, reason, parts = split_command_chain("a || b")
        assert not ok
        assert "||" in reason
        assert parts == []

    @pytest.mark.parametrize("command", ["&& a", "a &&", "a ;; b", "; a"])
    def test_dangling_operator(self, command):
        ok, reason, _ = split_command_chain(command)
        assert not ok
        assert "dangling chain operator" in reason


class TestSplitShellPipeline:
    def test_simple_pipeline(self):
        ok, _, segments = split_shell_pipeline("cat x | grep y | wc -l")
        assert ok
        assert segments == ["cat x", "grep y", "wc -l"]

    def test_pipe_in_quotes(self):
        ok, _, segments = split_shell_pipeline("grep 'a|b' file")
        assert ok
        assert segments == ["grep 'a|b' file"]

    @pytest.mark.parametrize("command", ["| grep x", "a | | b", "a |"])
    def test_empty_segment(self, command):
        ok, reason, _ = split_shell_pipeline(command)
        assert not ok
        assert reason == "empty pipeline segment"

    def test_empty_command(self):
        ok, reason, _ = split_shell_pipeline("   ")
        assert not ok
        assert reason == "empty command"


# ── analyze_shell_command ───────────────────────────────────────────


class TestRejectedConstructs:
    @pytest.mark.parametrize("command,token", [
        ("echo a > out", ">"),
        ("cat < in", "<"),
        ("id `whoami`", "`"),
        ("echo $(whoami)", "$()"),
        ('echo "$(whoami)"', "$()"),
        ('echo "`id`"', "`"),
        ("(ls)", "("),
        ("sleep 1 &", "&"),
        ("a || b", "||"),
        ("a |& b", "|&"),
        ("echo a\necho b", "newline"),
    ])
    def test_unsupported_token(self, command, token):
        analysis = analyze_shell_command(command, platform="linux")
        assert not analysis.ok
        assert analysis.reason == f"unsupported shell token: {token}"
        assert analysis.reason_code == DenyReason.UNSUPPORTED_CONSTRUCT
        assert analysis.segments == []

    def test_backtick_scenario(self):
        analysis = analyze_shell_command("id `whoami`", platform="linux")
        assert not analysis.ok
        assert "`" in analysis.reason

    def test_bare_ampersand_between_commands(self):
        analysis = analyze_shell_command("a & b", platform="linux")
        assert not analysis.ok
        assert analysis.reason_code == DenyReason.UNSUPPORTED_CONSTRUCT

    @pytest.mark.parametrize("command", ["echo 'abc", 'echo "abc', "echo abc\\"])
    def test_unterminated_quote_is_parse_error(self, command):
        analysis = analyze_shell_command(command, platform="linux")
        assert not analysis.ok
        assert analysis.reason_code == DenyReason.PARSE_ERROR

    def test_quoted_metacharacters_are_data(self):
        analysis = analyze_shell_command("echo '> < ( ) & ; `'", platform="linux")
        assert analysis.ok
        assert argvs(analysis) == [["echo", "> < ( ) & ; `"]]


class TestChainsAndPipelines:
    def test_chain_groups(self):
        analysis = analyze_shell_command("echo a && echo b | wc -l", platform="linux")
        assert analysis.ok
        assert [[s.argv for s in group] for group in analysis.chains] == [
            [["echo", "a"]],
            [["echo", "b"], ["wc", "-l"]],
        ]
        assert argvs(analysis) == [["echo", "a"], ["echo", "b"], ["wc", "-l"]]

    def test_single_command_has_one_group(self):
        analysis = analyze_shell_command("ls", platform="linux")
        assert analysis.ok
        assert len(analysis.chains) == 1
        assert all(group for group in analysis.chains)


class TestHeredoc:
    def test_body_is_skipped(self):
        analysis = analyze_shell_command("cat <<EOF\nhello > world\nEOF", platform="linux")
        assert analysis.ok
        assert len(analysis.segments) == 1
        assert analysis.segments[0].heredoc
        assert analysis.segments[0].argv[0] == "cat"

    def test_strip_tabs_form(self):
        analysis = analyze_shell_command("cat <<-END\n\tbody\n\tEND", platform="linux")
        assert analysis.ok

    def test_quoted_delimiter(self):
        analysis = analyze_shell_command("cat <<'EOF'\n$(not run)\nEOF", platform="linux")
        assert analysis.ok

    def test_unterminated_body(self):
        analysis = analyze_shell_command("cat <<EOF\nhello", platform="linux")
        assert not analysis.ok
        assert analysis.reason == "unterminated heredoc"
        assert analysis.reason_code == DenyReason.PARSE_ERROR

    def test_missing_delimiter(self):
        analysis = analyze_shell_command("cat <<", platform="linux")
        assert not analysis.ok
        assert analysis.reason == "invalid heredoc delimiter"

    def test_command_after_body_rejected(self):
        analysis = analyze_shell_command("cat <<EOF\nx\nEOF\nrm -rf /", platform="linux")
        assert not analysis.ok

    @pytest.mark.parametrize("command", [
        "cat <<E'F'\nx\nEF",
        'cat <<"E"F\nx\nEF',
        "cat <<E\\F\nx\nEF",
    ])
    def test_quote_removal_spans_whole_delimiter(self, command):
        analysis = analyze_shell_command(command, platform="linux")
        assert analysis.ok
        assert analysis.segments[0].heredoc

    def test_partially_quoted_delimiter_does_not_hide_commands(self):
        command = "head <<E'F' | tail\nEF\ntouch /tmp/marker\nE'F'"
        analysis = analyze_shell_command(command, platform="linux")
        assert not analysis.ok


class TestWindowsGrammar:
    @pytest.mark.parametrize("command", ["a & b", "a | b", "echo %PATH%", "echo !x!", "a ^ b", "dir > out"])
    def test_metacharacters_rejected(self, command):
        analysis = analyze_shell_command(command, platform="win32")
        assert not analysis.ok
        assert analysis.reason.startswith("unsupported windows shell token")
        assert analysis.reason_code == DenyReason.UNSUPPORTED_CONSTRUCT

    def test_simple_command(self):
        analysis = analyze_shell_command('git status "my dir"', platform="win32")
        assert analysis.ok
        assert argvs(analysis) == [["git", "status", "my dir"]]

    def test_odd_quotes(self):
        analysis = analyze_shell_command('git "status', platform="win32")
        assert not analysis.ok
        assert analysis.reason_code == DenyReason.PARSE_ERROR


# ── analyze_argv_command ────────────────────────────────────────────


class TestAnalyzeArgvCommand:
    def test_argv_bypasses_grammar(self):
        analysis = analyze_argv_command(["echo", "a > b", "`x`"], platform="linux")
        assert analysis.ok
        assert argvs(analysis) == [["echo", "a > b", "`x`"]]
        assert len(analysis.chains) == 1

    def test_empty_argv(self):
        analysis = analyze_argv_command(["", "  "], platform="linux")
        assert not analysis.ok
        assert analysis.reason == "empty argv"
