"""Allowlist matching against resolved executables."""

import os
import re
from collections.abc import Callable

from execgate.exec.resolver import expand_home, has_path_separator, is_windows_platform
from execgate.exec.safe_bins import is_trusted_path, match_safe_bin
from execgate.exec.types import (
    AllowlistEntry,
    AllowlistEvaluation,
    CommandAnalysis,
    CommandResolution,
    CommandSegment,
    SafeBinRuntimePolicy,
    SkillBinTrustEntry,
)

WILDCARD_CHARS = re.compile(r"[*?]")
WINDOWS_DEVICE_PREFIX = re.compile(r"^\\\\[?.]\\")


def glob_to_regex(pattern: str, ignore_case: bool = False) -> re.Pattern[str]:
    """
    Compile an allowlist glob.

    `**` matches across separators, `*` stays within one path component,
    `?` is any single character. Everything else is literal.
    """
    parts = ["^"]
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if i + 1 < len(pattern) and pattern[i + 1] == "*":
                parts.append(".*")
                i += 2
                continue
            parts.append("[^/]*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
        i += 1
    parts.append("$")
    return re.compile("".join(parts), re.IGNORECASE if ignore_case else 0)


def is_path_pattern(pattern: str) -> bool:
    return has_path_separator(pattern) or "~" in pattern


def _normalize_match_target(value: str, windows: bool) -> str:
    if windows:
        return WINDOWS_DEVICE_PREFIX.sub("", value).replace("\\", "/")
    return value


def _try_realpath(value: str) -> str | None:
    try:
        return os.path.realpath(value, strict=True)
    except (OSError, ValueError):
        return None


def matches_pattern(pattern: str, target: str, platform: str | None = None) -> bool:
    """
    Match one path pattern against a resolved path.

    On Windows, wildcard-free patterns are compared after realpath so that
    symlinked or re-mounted spellings of the same file match. Wildcard
    patterns are compared as written.
    """
    trimmed = pattern.strip()
    if not trimmed:
        return False
    expanded = expand_home(trimmed) if trimmed.startswith("~") else trimmed
    windows = is_windows_platform(platform)

    normalized_pattern = expanded
    normalized_target = target
    if windows and not WILDCARD_CHARS.search(expanded):
        normalized_pattern = _try_realpath(expanded) or expanded
        normalized_target = _try_realpath(target) or target

    normalized_pattern = _normalize_match_target(normalized_pattern, windows)
    normalized_target = _normalize_match_target(normalized_target, windows)
    return bool(glob_to_regex(normalized_pattern, ignore_case=windows).match(normalized_target))


def match_allowlist(
    entries: list[AllowlistEntry],
    resolution: CommandResolution | None,
    platform: str | None = None,
) -> AllowlistEntry | None:
    """First path-pattern entry matching the resolved path, if any."""
    if not entries or resolution is None or not resolution.resolved_path:
        return None
    for entry in entries:
        pattern = (entry.pattern or "").strip()
        if not pattern or not is_path_pattern(pattern):
            continue
        if matches_pattern(pattern, resolution.resolved_path, platform):
            return entry
    return None


def match_skill_bin(
    resolution: CommandResolution | None,
    skill_bins: list[SkillBinTrustEntry],
) -> bool:
    """Skill trust covers bare-name invocations of the exact skill binary."""
    if resolution is None or not resolution.resolved_path:
        return False
    if has_path_separator(resolution.raw_executable):
        return False
    resolved = os.path.normpath(resolution.resolved_path)
    for entry in skill_bins:
        if entry.name == resolution.raw_executable and os.path.normpath(entry.resolved_path) == resolved:
            return True
    return False


def _evaluate_segments(
    segments: list[CommandSegment],
    allowlist: list[AllowlistEntry],
    runtime: SafeBinRuntimePolicy,
    cwd: str | None,
    skill_bins: list[SkillBinTrustEntry],
    platform: str | None,
    file_exists: Callable[[str], bool] | None,
) -> AllowlistEvaluation:
    matches: list[AllowlistEntry] = []
    unprofiled: list[str] = []

    for segment in segments:
        resolution = segment.resolution
        match = match_allowlist(allowlist, resolution, platform)
        if match:
            matches.append(match)
            continue
        if resolution and is_trusted_path(resolution.resolved_path, runtime.trusted_dirs):
            continue
        if match_skill_bin(resolution, skill_bins):
            continue
        safe = match_safe_bin(resolution, runtime, cwd, platform, file_exists)
        if safe == "unprofiled":
            unprofiled.append(resolution.executable_name)
        if safe:
            continue
        return AllowlistEvaluation(satisfied=False)

    return AllowlistEvaluation(satisfied=True, matches=matches, unprofiled_hits=unprofiled)


def evaluate_exec_allowlist(
    analysis: CommandAnalysis,
    allowlist: list[AllowlistEntry],
    runtime: SafeBinRuntimePolicy,
    cwd: str | None = None,
    skill_bins: list[SkillBinTrustEntry] | None = None,
    auto_allow_skills: bool = False,
    platform: str | None = None,
    file_exists: Callable[[str], bool] | None = None,
) -> AllowlistEvaluation:
    """
    Check every segment of every chain group.

    A single unmatched segment fails the whole command; segments are never
    judged or executed independently.
    """
    if not analysis.ok or not analysis.segments:
        return AllowlistEvaluation(satisfied=False)

    trusted_skills = list(skill_bins or []) if auto_allow_skills else []
    groups = analysis.chains or [analysis.segments]

    matches: list[AllowlistEntry] = []
    unprofiled: list[str] = []
    for group in groups:
        result = _evaluate_segments(group, allowlist, runtime, cwd, trusted_skills, platform, file_exists)
        if not result.satisfied:
            return AllowlistEvaluation(satisfied=False)
        matches.extend(result.matches)
        unprofiled.extend(result.unprofiled_hits)

    return AllowlistEvaluation(satisfied=True, matches=matches, unprofiled_hits=unprofiled)


def resolve_allow_always_patterns(
    segments: list[CommandSegment],
    platform: str | None = None,
) -> list[str]:
    """
    Derive allowlist patterns from resolved paths, one per distinct binary.

    Unresolved segments contribute nothing: the literal command text is never
    persisted as a pattern.
    """
    patterns: list[str] = []
    seen: set[str] = set()
    windows = is_windows_platform(platform)
    for segment in segments:
        resolution = segment.resolution
        if resolution is None or not resolution.resolved_path:
            continue
        pattern = os.path.normpath(resolution.resolved_path)
        key = pattern.lower() if windows else pattern
        if key in seen:
            continue
        seen.add(key)
        patterns.append(pattern)
    return patterns
