"""Tests for safe bins, profiles and trusted directories."""

import os
from types import SimpleNamespace

import pytest

from execgate.exec.safe_bins import (
    DEFAULT_SAFE_BINS,
    is_interpreter_like_safe_bin,
    is_trusted_path,
    list_interpreter_like_safe_bins,
    match_safe_bin,
    merge_safe_bin_profiles,
    normalize_trusted_dirs,
    profile_allows,
    resolve_safe_bin_runtime_policy,
    resolve_safe_bins,
)
from execgate.exec.types import CommandResolution, SafeBinProfile, SafeBinRuntimePolicy


def never_exists(path: str) -> bool:
    return False


def resolution(argv: list[str], resolved: str | None = None) -> CommandResolution:
    return CommandResolution(
        raw_executable=argv[0],
        resolved_path=resolved,
        executable_name=os.path.basename(resolved) if resolved else argv[0],
        effective_argv=argv,
    )


# ── Names ───────────────────────────────────────────────────────────


class TestResolveSafeBins:
    def test_none_means_defaults(self):
        assert resolve_safe_bins(None) == DEFAULT_SAFE_BINS

    def test_empty_list_means_none(self):
        assert resolve_safe_bins([]) == frozenset()

    def test_normalized(self):
        assert resolve_safe_bins(["  JQ ", "/usr/bin/grep", ""]) == frozenset(["jq", "grep"])


class TestInterpreterLike:
    @pytest.mark.parametrize("name", ["python3", "python3.12", "node20", "ruby3.2", "perl5", "php8", "bash", "pwsh.exe"])
    def test_interpreters(self, name):
        assert is_interpreter_like_safe_bin(name)

    @pytest.mark.parametrize("name", ["jq", "grep", "pythonic", ""])
    def test_not_interpreters(self, name):
        assert not is_interpreter_like_safe_bin(name)

    def test_list_sorted(self):
        assert list_interpreter_like_safe_bins(["jq", "sh", "Python3"]) == ["python3", "sh"]


# ── Profiles ────────────────────────────────────────────────────────


class TestProfileAllows:
    def test_empty_profile_accepts_anything(self):
        assert profile_allows(["-x", "a", "b"], SafeBinProfile(), file_exists=never_exists)

    def test_max_positional(self):
        profile = SafeBinProfile(max_positional=1)
        assert profile_allows(["a"], profile, file_exists=never_exists)
        assert not profile_allows(["a", "b"], profile, file_exists=never_exists)

    def test_min_positional(self):
        profile = SafeBinProfile(min_positional=1)
        assert not profile_allows(["-c"], profile, file_exists=never_exists)

    def test_allowed_positionals(self):
        profile = SafeBinProfile(allowed_positionals=["a"])
        assert profile_allows(["a"], profile, file_exists=never_exists)
        assert not profile_allows(["b"], profile, file_exists=never_exists)

    def test_denied_flag_exact(self):
        profile = SafeBinProfile(denied_flags=["-f", "--file"])
        assert not profile_allows(["-f", "x"], profile, file_exists=never_exists)
        assert not profile_allows(["--file=x"], profile, file_exists=never_exists)

    def test_denied_flag_in_cluster(self):
        profile = SafeBinProfile(denied_flags=["-r"])
        assert not profile_allows(["-nr", "x"], profile, file_exists=never_exists)

    def test_denied_long_flag_prefix(self):
        profile = SafeBinProfile(denied_flags=["--recursive"])
        assert not profile_allows(["--recur"], profile, file_exists=never_exists)

    def test_double_dash_ends_flags(self):
        profile = SafeBinProfile(denied_flags=["-f"], max_positional=1)
        assert profile_allows(["--", "-f"], profile, file_exists=never_exists)

    def test_deny_path_args(self):
        profile = SafeBinProfile(deny_path_args=True)
        assert not profile_allows(["/etc/passwd"], profile, file_exists=never_exists)
        assert not profile_allows(["--input=./x"], profile, file_exists=never_exists)
        assert not profile_allows(["data.json"], profile, file_exists=lambda p: True)
        assert profile_allows(["pattern"], profile, file_exists=never_exists)

    def test_empty_and_stdin_tokens_skip_path_check(self):
        profile = SafeBinProfile(deny_path_args=True)
        assert profile_allows(["", "-"], profile, file_exists=lambda p: True)

    @pytest.mark.parametrize("name", sorted(DEFAULT_SAFE_BINS))
    def test_default_profiles_deny_paths(self, name):
        profile = merge_safe_bin_profiles()[name]
        assert profile.deny_path_args
        assert not profile_allows(["/etc/passwd"], profile, file_exists=never_exists)

    def test_default_head_rejects_existing_file(self, tmp_path):
        (tmp_path / "secret.txt").write_text("token")
        profile = merge_safe_bin_profiles()["head"]
        assert not profile_allows(["secret.txt"], profile, cwd=str(tmp_path))
        assert not profile_allows(["-n", "1", "secret.txt"], profile, cwd=str(tmp_path))
        assert profile_allows(["-n", "1"], profile, cwd=str(tmp_path))


class TestMergeProfiles:
    def test_precedence(self):
        merged = merge_safe_bin_profiles(
            {"jq": {"max_positional": 2}, "cut": {"max_positional": 1}},
            {"jq": {"max_positional": 3}},
        )
        assert merged["jq"].max_positional == 3
        assert merged["cut"].max_positional == 1
        assert merged["grep"].denied_flags


# ── Trusted directories ─────────────────────────────────────────────


class TestTrustedDirs:
    def test_normalized(self, tmp_path):
        dirs = normalize_trusted_dirs([f"{tmp_path}/a/../b/", "  ", str(tmp_path / "b")])
        assert dirs == frozenset([str(tmp_path / "b")])

    def test_direct_and_nested(self, tmp_path):
        trusted = normalize_trusted_dirs([str(tmp_path / "tools")])
        assert is_trusted_path(str(tmp_path / "tools" / "x"), trusted)
        assert is_trusted_path(str(tmp_path / "tools" / "sub" / "x"), trusted)

    def test_sibling_prefix_not_trusted(self, tmp_path):
        trusted = normalize_trusted_dirs([str(tmp_path / "tools")])
        assert not is_trusted_path(str(tmp_path / "tools-evil" / "x"), trusted)

    def test_dotdot_escape_not_trusted(self, tmp_path):
        trusted = normalize_trusted_dirs([str(tmp_path / "tools")])
        assert not is_trusted_path(str(tmp_path / "tools" / ".." / "other" / "x"), trusted)

    def test_unresolved(self):
        assert not is_trusted_path(None, frozenset(["/usr/bin"]))


# ── Runtime policy ──────────────────────────────────────────────────


class TestRuntimePolicy:
    def test_defaults(self):
        runtime = resolve_safe_bin_runtime_policy()
        assert runtime.safe_bins == DEFAULT_SAFE_BINS
        assert runtime.trusted_dirs == frozenset()
        assert runtime.unprofiled_safe_bins == []

    def test_local_bins_replace_global(self):
        runtime = resolve_safe_bin_runtime_policy(
            SimpleNamespace(safe_bins=["jq", "grep"]),
            SimpleNamespace(safe_bins=["jq", "mytool", "python3"]),
        )
        assert runtime.safe_bins == frozenset(["jq", "mytool", "python3"])
        assert runtime.unprofiled_safe_bins == ["mytool", "python3"]
        assert runtime.unprofiled_interpreter_safe_bins == ["python3"]
        assert "grep" not in runtime.safe_bin_profiles

    def test_trusted_dirs_add_up(self, tmp_path):
        runtime = resolve_safe_bin_runtime_policy(
            SimpleNamespace(trusted_dirs=[str(tmp_path / "a")]),
            SimpleNamespace(trusted_dirs=[str(tmp_path / "b")]),
        )
        assert runtime.trusted_dirs == frozenset([str(tmp_path / "a"), str(tmp_path / "b")])


class TestMatchSafeBin:
    def setup_method(self):
        self.runtime = resolve_safe_bin_runtime_policy()

    def test_profiled_match(self):
        res = resolution(["jq", "."], "/usr/bin/jq")
        assert match_safe_bin(res, self.runtime, file_exists=never_exists) == "profiled"

    def test_unresolved_name_still_matches(self):
        res = resolution(["wc", "-l"])
        assert match_safe_bin(res, self.runtime, file_exists=never_exists) == "profiled"

    def test_path_invocation_never_safe(self):
        res = resolution(["./jq", "."], "/work/jq")
        assert match_safe_bin(res, self.runtime, file_exists=never_exists) is None

    def test_profile_violation(self):
        res = resolution(["jq", "-f", "prog.jq"], "/usr/bin/jq")
        assert match_safe_bin(res, self.runtime, file_exists=never_exists) is None

    def test_unprofiled(self):
        runtime = SafeBinRuntimePolicy(safe_bins=frozenset(["mytool"]))
        res = resolution(["mytool", "anything"], "/opt/mytool")
        assert match_safe_bin(res, runtime, file_exists=never_exists) == "unprofiled"

    def test_not_a_safe_bin(self):
        res = resolution(["rm", "-rf", "/"], "/bin/rm")
        assert match_safe_bin(res, self.runtime, file_exists=never_exists) is None

    def test_windows_stem(self):
        res = resolution(["jq", "."], "C:\\tools\\jq.exe")
        res.executable_name = "jq.exe"
        assert match_safe_bin(res, self.runtime, platform="win32", file_exists=never_exists) == "profiled"
