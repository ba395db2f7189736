"""Request normalization: shell wrappers, command text and env overrides."""

import json
import os
import re
from dataclasses import dataclass, field

from loguru import logger

from execgate.exec.resolver import is_windows_platform

POSIX_SHELLS = frozenset(["sh", "bash", "zsh", "dash", "ksh", "ash", "fish"])
CMD_SHELLS = frozenset(["cmd", "cmd.exe"])
POWERSHELLS = frozenset(["pwsh", "pwsh.exe", "powershell", "powershell.exe"])

ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Keys that change how executables are found or what gets loaded into them
BLOCKED_ENV_KEYS = frozenset([
    "PATH", "PATHEXT", "ENV", "BASH_ENV", "IFS", "SHELLOPTS", "BASHOPTS",
    "PS4", "PROMPT_COMMAND", "CDPATH", "GLOBIGNORE", "NODE_OPTIONS",
    "NODE_PATH", "PYTHONPATH", "PYTHONSTARTUP", "PYTHONHOME", "PERL5OPT",
    "PERL5LIB", "PERLLIB", "RUBYOPT", "RUBYLIB", "JAVA_TOOL_OPTIONS",
    "_JAVA_OPTIONS", "GIT_EXEC_PATH", "GIT_SSH_COMMAND", "COMSPEC",
])
BLOCKED_ENV_PREFIXES = ("LD_", "DYLD_", "BASH_FUNC_")


@dataclass
class RunCommand:
    """A normalized request command."""
    ok: bool
    message: str = ""
    argv: list[str] = field(default_factory=list)
    shell_command: str | None = None
    cmd_text: str = ""


def _executable_basename(token: str) -> str:
    return re.split(r"[\\/]", token.strip())[-1].lower()


def build_shell_wrapper_argv(command: str, platform: str | None = None) -> list[str]:
    """Argv that runs a command string through the platform shell."""
    if is_windows_platform(platform):
        return ["cmd.exe", "/d", "/s", "/c", command]
    return ["/bin/sh", "-c", command]


def is_cmd_exe_invocation(argv: list[str]) -> bool:
    if not argv:
        return False
    return _executable_basename(argv[0]) in CMD_SHELLS


def _posix_payload(argv: list[str]) -> str | None:
    for index, token in enumerate(argv[1:], start=1):
        if token == "--" or not token.startswith("-"):
            return None
        if token.startswith("--"):
            continue
        if "c" in token[1:]:
            return argv[index + 1] if index + 1 < len(argv) else ""
    return None


def _flag_payload(argv: list[str], flags: tuple[str, ...]) -> str | None:
    for index, token in enumerate(argv[1:], start=1):
        if token.lower() in flags:
            return " ".join(argv[index + 1:])
    return None


def extract_shell_wrapper_command(argv: list[str]) -> str | None:
    """
    Return the payload of a shell-wrapper argv, or None if argv is not one.

    Recognized forms: `sh -c CMD` (and bash, zsh, dash, ksh, ash, fish, with
    clustered flags such as `-lc`), `cmd.exe /c CMD` and
    `pwsh -Command CMD`. An empty string means a wrapper with no payload.
    """
    if not argv:
        return None
    name = _executable_basename(argv[0])
    if name.endswith(".exe") and name[:-4] in POSIX_SHELLS:
        name = name[:-4]
    if name in POSIX_SHELLS:
        return _posix_payload(argv)
    if name in CMD_SHELLS:
        return _flag_payload(argv, ("/c", "/k"))
    if name in POWERSHELLS:
        return _flag_payload(argv, ("-command", "-c"))
    return None


def format_command_text(argv: list[str]) -> str:
    """Human-readable command text for an argv (audit and approvals)."""
    parts = []
    for arg in argv:
        if not arg or any(ch.isspace() for ch in arg) or '"' in arg:
            parts.append(json.dumps(arg))
        else:
            parts.append(arg)
    return " ".join(parts)


def resolve_run_command(
    command: str | list[str],
    raw_command: str | None = None,
    platform: str | None = None,
) -> RunCommand:
    """
    Normalize a request command.

    String commands get the platform shell-wrapper argv. Argv commands run as
    given, and shell-wrapper argvs expose their payload as `shell_command`.
    A supplied raw command has to match what will actually be analyzed.
    """
    raw = raw_command.strip() if raw_command and raw_command.strip() else None

    if isinstance(command, str):
        text = command.strip()
        if not text:
            return RunCommand(ok=False, message="command required")
        if raw is not None and raw != text:
            return RunCommand(ok=False, message="rawCommand does not match command")
        return RunCommand(
            ok=True,
            argv=build_shell_wrapper_argv(text, platform),
            shell_command=text,
            cmd_text=text,
        )

    argv = [str(arg) for arg in command]
    if not argv or not any(arg.strip() for arg in argv):
        return RunCommand(ok=False, message="command required")

    shell_command = extract_shell_wrapper_command(argv)
    if shell_command is not None and not shell_command.strip():
        return RunCommand(ok=False, message="shell wrapper requires a command")

    cmd_text = shell_command.strip() if shell_command is not None else format_command_text(argv)
    if raw is not None and raw != cmd_text:
        return RunCommand(ok=False, message="rawCommand does not match command")

    return RunCommand(
        ok=True,
        argv=argv,
        shell_command=shell_command.strip() if shell_command is not None else None,
        cmd_text=cmd_text,
    )


# ── Environment ─────────────────────────────────────────────────────


def is_blocked_env_key(key: str) -> bool:
    upper = key.upper()
    return upper in BLOCKED_ENV_KEYS or upper.startswith(BLOCKED_ENV_PREFIXES)


def sanitize_env_overrides(overrides: dict[str, str] | None) -> dict[str, str] | None:
    """Drop overrides that are invalid names or alter resolution/loading."""
    if not overrides:
        return None
    sanitized: dict[str, str] = {}
    for key, value in overrides.items():
        name = str(key).strip()
        if not ENV_NAME.match(name):
            logger.warning(f"Dropping env override with invalid name: {name!r}")
            continue
        if is_blocked_env_key(name):
            logger.warning(f"Dropping blocked env override: {name}")
            continue
        sanitized[name] = str(value)
    return sanitized or None


def build_exec_env(sanitized: dict[str, str] | None) -> dict[str, str] | None:
    """Process environment plus already-sanitized overrides. None means inherit."""
    if not sanitized:
        return None
    env = os.environ.copy()
    env.update(sanitized)
    return env
