"""Safe bins, argument-shape profiles and trusted directories."""

import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import fields
from typing import Any, Literal

from execgate.exec.resolver import has_path_separator, is_windows_platform
from execgate.exec.types import CommandResolution, SafeBinProfile, SafeBinRuntimePolicy

# Interpreter-free filters that are low risk by name
DEFAULT_SAFE_BINS = frozenset([
    "jq", "grep", "cut", "sort", "uniq", "head", "tail", "tr", "wc",
])

DEFAULT_SAFE_BIN_PROFILES: dict[str, SafeBinProfile] = {
    "jq": SafeBinProfile(deny_path_args=True, denied_flags=[
        "-f", "--from-file", "--rawfile", "--slurpfile", "-L", "--library-path",
    ]),
    "grep": SafeBinProfile(deny_path_args=True, denied_flags=[
        "-r", "-R", "--recursive", "--dereference-recursive", "-f", "--file",
    ]),
    "sort": SafeBinProfile(deny_path_args=True, denied_flags=[
        "-o", "--output", "-T", "--temporary-directory", "--compress-program",
        "--files0-from", "--random-source",
    ]),
    "uniq": SafeBinProfile(deny_path_args=True, max_positional=1),
    "wc": SafeBinProfile(deny_path_args=True, denied_flags=["--files0-from"]),
    "tr": SafeBinProfile(deny_path_args=True, max_positional=2),
    "cut": SafeBinProfile(deny_path_args=True),
    "head": SafeBinProfile(deny_path_args=True),
    "tail": SafeBinProfile(deny_path_args=True),
}

INTERPRETER_LIKE_SAFE_BINS = frozenset([
    "ash", "bash", "busybox", "bun", "cmd", "cmd.exe", "cscript", "dash",
    "deno", "fish", "ksh", "lua", "node", "nodejs", "perl", "php",
    "powershell", "powershell.exe", "pypy", "pwsh", "pwsh.exe", "python",
    "python2", "python3", "ruby", "sh", "toybox", "wscript", "zsh",
])

INTERPRETER_LIKE_PATTERNS = [
    re.compile(r"^python\d+(?:\.\d+)?$"),
    re.compile(r"^ruby\d+(?:\.\d+)?$"),
    re.compile(r"^perl\d+(?:\.\d+)?$"),
    re.compile(r"^php\d+(?:\.\d+)?$"),
    re.compile(r"^node\d+(?:\.\d+)?$"),
]

WINDOWS_DRIVE_PATH = re.compile(r"^[A-Za-z]:[\\/]")

SafeBinMatch = Literal["profiled", "unprofiled"]


def normalize_safe_bin_name(raw: str) -> str:
    """Lower-cased basename of a safe-bin entry."""
    trimmed = raw.strip().lower()
    if not trimmed:
        return ""
    return re.split(r"[\\/]", trimmed)[-1]


def normalize_safe_bins(entries: Iterable[str] | None) -> frozenset[str]:
    if entries is None:
        return frozenset()
    return frozenset(name for name in (normalize_safe_bin_name(e) for e in entries) if name)


def resolve_safe_bins(entries: Iterable[str] | None) -> frozenset[str]:
    """None means "not configured" and falls back to the defaults."""
    if entries is None:
        return DEFAULT_SAFE_BINS
    return normalize_safe_bins(entries)


def is_interpreter_like_safe_bin(raw: str) -> bool:
    """Shells and language runtimes defeat argument-shape guarantees."""
    name = normalize_safe_bin_name(raw)
    if not name:
        return False
    if name in INTERPRETER_LIKE_SAFE_BINS:
        return True
    return any(pattern.match(name) for pattern in INTERPRETER_LIKE_PATTERNS)


def list_interpreter_like_safe_bins(entries: Iterable[str]) -> list[str]:
    names = (normalize_safe_bin_name(e) for e in entries)
    return sorted(name for name in names if name and is_interpreter_like_safe_bin(name))


# ── Profiles ────────────────────────────────────────────────────────


_PROFILE_FIELDS = {f.name for f in fields(SafeBinProfile)}


def coerce_safe_bin_profile(value: Any) -> SafeBinProfile:
    """Accept a SafeBinProfile, a pydantic model or a plain dict."""
    if isinstance(value, SafeBinProfile):
        return value
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    if not isinstance(value, Mapping):
        return SafeBinProfile()
    data = {k: v for k, v in value.items() if k in _PROFILE_FIELDS and v is not None}
    denied = data.get("denied_flags") or []
    data["denied_flags"] = sorted({flag.strip() for flag in denied if flag and flag.strip()})
    if data.get("allowed_positionals") is not None:
        data["allowed_positionals"] = list(data["allowed_positionals"])
    return SafeBinProfile(**data)


def normalize_safe_bin_profiles(raw: Mapping[str, Any] | None) -> dict[str, SafeBinProfile]:
    if not raw:
        return {}
    profiles: dict[str, SafeBinProfile] = {}
    for name, value in raw.items():
        key = normalize_safe_bin_name(name)
        if key:
            profiles[key] = coerce_safe_bin_profile(value)
    return profiles


def merge_safe_bin_profiles(
    global_profiles: Mapping[str, Any] | None = None,
    local_profiles: Mapping[str, Any] | None = None,
) -> dict[str, SafeBinProfile]:
    """Built-in defaults < global < local, replaced per bin."""
    return {
        **DEFAULT_SAFE_BIN_PROFILES,
        **normalize_safe_bin_profiles(global_profiles),
        **normalize_safe_bin_profiles(local_profiles),
    }


# ── Trusted directories ─────────────────────────────────────────────


def normalize_trusted_dirs(entries: Iterable[str] | None) -> frozenset[str]:
    """Absolute, normalized, de-duplicated. Never derived from PATH."""
    if not entries:
        return frozenset()
    dirs = set()
    for entry in entries:
        trimmed = entry.strip() if entry else ""
        if trimmed:
            dirs.add(os.path.normpath(os.path.abspath(os.path.expanduser(trimmed))))
    return frozenset(dirs)


def is_trusted_path(resolved_path: str | None, trusted_dirs: Iterable[str]) -> bool:
    """Check if a resolved executable lives inside a trusted directory."""
    if not resolved_path:
        return False
    parent = os.path.dirname(os.path.normpath(os.path.abspath(resolved_path)))
    for directory in trusted_dirs:
        if parent == directory or parent.startswith(directory.rstrip(os.sep) + os.sep):
            return True
    return False


# ── Runtime policy ──────────────────────────────────────────────────


def resolve_safe_bin_runtime_policy(global_scope: Any = None, local_scope: Any = None) -> SafeBinRuntimePolicy:
    """
    Merge global and per-agent safe-bin settings.

    Scopes are any objects with optional `safe_bins`, `safe_bin_profiles` and
    `trusted_dirs` attributes (the config models). The agent's safe_bins
    replace the global list; profiles merge per bin; trusted dirs add up.
    """
    local_bins = getattr(local_scope, "safe_bins", None)
    global_bins = getattr(global_scope, "safe_bins", None)
    safe_bins = resolve_safe_bins(local_bins if local_bins is not None else global_bins)

    profiles = merge_safe_bin_profiles(
        getattr(global_scope, "safe_bin_profiles", None),
        getattr(local_scope, "safe_bin_profiles", None),
    )
    trusted = normalize_trusted_dirs([
        *(getattr(global_scope, "trusted_dirs", None) or []),
        *(getattr(local_scope, "trusted_dirs", None) or []),
    ])
    unprofiled = sorted(name for name in safe_bins if name not in profiles)
    return SafeBinRuntimePolicy(
        safe_bins=safe_bins,
        safe_bin_profiles={name: p for name, p in profiles.items() if name in safe_bins},
        trusted_dirs=trusted,
        unprofiled_safe_bins=unprofiled,
        unprofiled_interpreter_safe_bins=list_interpreter_like_safe_bins(unprofiled),
    )


# ── Usage checks ────────────────────────────────────────────────────


def is_path_like_token(value: str) -> bool:
    trimmed = value.strip()
    if not trimmed or trimmed == "-":
        return False
    if trimmed.startswith(("./", "../", "~", "/")):
        return True
    return bool(WINDOWS_DRIVE_PATH.match(trimmed))


def _default_file_exists(path: str) -> bool:
    return os.path.exists(path)


def _flag_denied(flag: str, denied: list[str]) -> bool:
    if not denied:
        return False
    if flag in denied:
        return True
    if flag.startswith("--"):
        # GNU getopt accepts unambiguous prefixes of long options
        return len(flag) > 3 and any(d.startswith(flag) for d in denied if d.startswith("--"))
    # Clustered short options: -rn is -r -n
    return any(f"-{c}" in denied for c in flag[1:])


def profile_allows(
    args: list[str],
    profile: SafeBinProfile,
    cwd: str | None = None,
    file_exists: Callable[[str], bool] | None = None,
) -> bool:
    """Check an argument list (without argv[0]) against a profile."""
    exists = file_exists or _default_file_exists
    base = cwd or os.getcwd()
    positionals: list[str] = []
    end_of_flags = False

    def touches_file(value: str) -> bool:
        return is_path_like_token(value) or exists(os.path.join(base, value))

    for token in args:
        if not end_of_flags and token == "--":
            end_of_flags = True
            continue
        if not end_of_flags and token.startswith("-") and token != "-":
            name, _, value = token.partition("=")
            if _flag_denied(name, profile.denied_flags):
                return False
            if value and profile.deny_path_args and touches_file(value):
                return False
            continue
        if token == "-":
            continue
        if profile.deny_path_args and token and touches_file(token):
            return False
        positionals.append(token)

    if profile.min_positional is not None and len(positionals) < profile.min_positional:
        return False
    if profile.max_positional is not None and len(positionals) > profile.max_positional:
        return False
    if profile.allowed_positionals is not None:
        allowed = set(profile.allowed_positionals)
        if any(p not in allowed for p in positionals):
            return False
    return True


def match_safe_bin(
    resolution: CommandResolution | None,
    runtime: SafeBinRuntimePolicy,
    cwd: str | None = None,
    platform: str | None = None,
    file_exists: Callable[[str], bool] | None = None,
) -> SafeBinMatch | None:
    """
    Name-based safe-bin match for one segment.

    Only bare-name invocations qualify: `./jq` names a file in the working
    directory, not the jq the operator trusted.
    """
    if resolution is None or not runtime.safe_bins:
        return None
    raw = resolution.raw_executable
    if has_path_separator(raw) or raw.startswith("~"):
        return None

    name = resolution.executable_name.lower()
    if name not in runtime.safe_bins and is_windows_platform(platform):
        name = os.path.splitext(name)[0]
    if name not in runtime.safe_bins:
        return None

    profile = runtime.safe_bin_profiles.get(name)
    if profile is None:
        return "unprofiled"
    args = resolution.effective_argv[1:]
    if not profile_allows(args, profile, cwd, file_exists):
        return None
    return "profiled"
