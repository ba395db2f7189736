"""Resolve command names to concrete executables on disk."""

import os
import re
import stat
import sys
from pathlib import Path, PureWindowsPath

from execgate.exec.types import CommandResolution

DEFAULT_PATHEXT = ".EXE;.CMD;.BAT;.COM"

# Wrappers that only dispatch to the next argv element
MAX_WRAPPER_DEPTH = 4

ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def is_windows_platform(platform: str | None = None) -> bool:
    """Check if a platform string names Windows (win32, windows, ...)."""
    value = (platform if platform is not None else sys.platform) or ""
    return value.strip().lower().startswith("win")


def has_path_separator(value: str) -> bool:
    return "/" in value or "\\" in value


def expand_home(value: str) -> str:
    """Expand a leading ~ or ~/ to the home directory."""
    if value == "~":
        return str(Path.home())
    if value.startswith("~/") or value.startswith("~\\"):
        return str(Path.home() / value[2:])
    return value


def _env_value(env: dict[str, str] | None, *keys: str) -> str | None:
    for source in (env or {}, os.environ):
        for key in keys:
            value = source.get(key)
            if value is not None:
                return value
    return None


def is_executable_file(path: str, platform: str | None = None) -> bool:
    """Regular file, and on POSIX with an execute bit we can use."""
    try:
        st = os.stat(path)
    except OSError:
        return False
    if not stat.S_ISREG(st.st_mode):
        return False
    if is_windows_platform(platform):
        return True
    return os.access(path, os.X_OK)


def _is_absolute(value: str, platform: str | None) -> bool:
    if is_windows_platform(platform) and PureWindowsPath(value).is_absolute():
        return True
    return os.path.isabs(value)


def resolve_executable_path(
    raw_executable: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    platform: str | None = None,
) -> str | None:
    """
    Resolve a raw command token to an absolute executable path.

    Path-like tokens are resolved against cwd; bare names are searched on
    PATH (and PATHEXT on Windows). Returns None when nothing executable is
    found.
    """
    expanded = expand_home(raw_executable) if raw_executable.startswith("~") else raw_executable
    windows = is_windows_platform(platform)

    if has_path_separator(expanded):
        if _is_absolute(expanded, platform):
            # normpath so `..` cannot walk out of a trusted prefix
            candidate = os.path.normpath(expanded)
            return candidate if is_executable_file(candidate, platform) else None
        base = cwd.strip() if cwd and cwd.strip() else os.getcwd()
        candidate = os.path.normpath(os.path.join(base, expanded))
        return candidate if is_executable_file(candidate, platform) else None

    env_path = _env_value(env, "PATH", "Path") or ""
    delimiter = ";" if windows else ":"
    entries = [entry for entry in env_path.split(delimiter) if entry]

    extensions = [""]
    if windows and not PureWindowsPath(expanded).suffix:
        pathext = _env_value(env, "PATHEXT", "Pathext") or DEFAULT_PATHEXT
        extensions = [ext.lower() for ext in pathext.split(";") if ext]

    for entry in entries:
        for ext in extensions:
            candidate = os.path.join(entry, expanded + ext)
            if is_executable_file(candidate, platform):
                return candidate
    return None


def _basename(path: str) -> str:
    return re.split(r"[\\/]", path)[-1]


def unwrap_dispatch_wrappers(argv: list[str]) -> list[str]:
    """
    Strip transparent `env` wrappers from the front of an argv.

    Only a bare `env` (optionally followed by `--`) is transparent. Options
    such as `-S` or `NAME=value` assignments change what runs, so the argv is
    returned unchanged and `env` itself has to be allowed.
    """
    current = list(argv)
    for _ in range(MAX_WRAPPER_DEPTH):
        if not current or _basename(current[0]).lower() != "env":
            return current
        rest = current[1:]
        if rest and rest[0] == "--":
            rest = rest[1:]
        if not rest:
            return current
        head = rest[0]
        if head.startswith("-") or ENV_ASSIGNMENT.match(head):
            return current
        current = rest
    return current


def resolve_command_resolution_from_argv(
    argv: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    platform: str | None = None,
) -> CommandResolution | None:
    """Build the resolution for a tokenized segment."""
    if not argv or not argv[0].strip():
        return None
    effective = unwrap_dispatch_wrappers(argv)
    raw_executable = effective[0].strip()
    resolved = resolve_executable_path(raw_executable, cwd, env, platform)
    return CommandResolution(
        raw_executable=raw_executable,
        resolved_path=resolved,
        executable_name=_basename(resolved) if resolved else raw_executable,
        effective_argv=effective,
    )
