"""Execution planning: the exact argv that will run."""

from collections.abc import Callable

from loguru import logger

from execgate.exec.command import build_shell_wrapper_argv
from execgate.exec.types import (
    ApprovalRecord,
    CommandAnalysis,
    CommandSegment,
    ExecSecurity,
    ExecutionPlan,
    PolicyDecision,
    RunResult,
)

TRUNCATION_SUFFIX = "... (truncated)"

# Characters the shell expands outside quotes
UNQUOTED_EXPANSION_CHARS = frozenset(["*", "?", "[", "{", "~"])


def has_shell_expansion(command: str) -> bool:
    """
    Check if a shell would expand anything in the command text.

    `$` counts unless single-quoted. Glob, brace and tilde characters count
    only outside quotes.
    """
    in_single = in_double = escaped = False
    for ch in command:
        if escaped:
            escaped = False
            continue
        if in_single:
            if ch == "'":
                in_single = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == "$":
            return True
        if in_double:
            if ch == '"':
                in_double = False
            continue
        if ch == "'":
            in_single = True
        elif ch == '"':
            in_double = True
        elif ch in UNQUOTED_EXPANSION_CHARS:
            return True
    return False


def _same_segment(a: CommandSegment, b: CommandSegment) -> bool:
    if a.argv != b.argv:
        return False
    path_a = a.resolution.resolved_path if a.resolution else None
    path_b = b.resolution.resolved_path if b.resolution else None
    return path_a is not None and path_a == path_b


def is_strict_plan(security: ExecSecurity, decision: PolicyDecision) -> bool:
    """Allowed by the allowlist alone, so the plan must match the analysis."""
    return (
        security == "allowlist"
        and not decision.approved_by_ask
        and decision.analysis_ok
        and decision.allowlist_satisfied
    )


def plan_execution(
    security: ExecSecurity,
    decision: PolicyDecision,
    analysis: CommandAnalysis,
    argv: list[str],
    shell_command: str | None = None,
    platform: str | None = None,
    reanalyze: Callable[[str], CommandAnalysis] | None = None,
) -> ExecutionPlan | None:
    """
    Build the execution plan for an allowed request.

    Returns None when a command allowed by the allowlist cannot be pinned to
    what was analyzed; the caller denies with execution-plan-miss.
    """
    if not is_strict_plan(security, decision):
        if shell_command is not None:
            wrapper = list(argv) if argv else build_shell_wrapper_argv(shell_command, platform)
            return ExecutionPlan(argv=wrapper, source="raw")
        return ExecutionPlan(argv=list(argv), source="raw")

    segments = analysis.segments
    if len(segments) == 1 and len(analysis.chains) <= 1:
        segment = segments[0]
        if segment.heredoc:
            logger.warning("Execution plan miss: heredoc needs a shell")
            return None
        effective = segment.resolution.effective_argv if segment.resolution else []
        if not effective:
            return None
        return ExecutionPlan(argv=list(effective), source="allowlist-resolved")

    if any(segment.heredoc for segment in segments):
        logger.warning("Execution plan miss: heredoc body is not part of any analyzed segment")
        return None
    if shell_command is None or reanalyze is None:
        return None
    if has_shell_expansion(shell_command):
        logger.warning("Execution plan miss: command text contains shell expansion")
        return None

    # The text handed to the shell has to analyze to the same segments again
    rechecked = reanalyze(shell_command)
    if not rechecked.ok or len(rechecked.segments) != len(segments):
        return None
    if not all(_same_segment(a, b) for a, b in zip(segments, rechecked.segments)):
        logger.warning("Execution plan miss: segments drifted between analysis and planning")
        return None
    return ExecutionPlan(argv=build_shell_wrapper_argv(shell_command, platform), source="raw")


def apply_output_truncation(result: RunResult) -> RunResult:
    """Mark truncated output: on stderr if it has content, else on stdout."""
    if not result.truncated:
        return result
    if result.stderr.strip():
        result.stderr = f"{result.stderr}\n{TRUNCATION_SUFFIX}"
    else:
        result.stdout = f"{result.stdout}\n{TRUNCATION_SUFFIX}"
    return result


def _normalized(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def approval_matches_request(
    record: ApprovalRecord,
    cmd_text: str,
    argv: list[str],
    cwd: str | None = None,
    agent_id: str | None = None,
    session_key: str | None = None,
) -> bool:
    """
    Check an approval record against the request it is attached to.

    The record must name the same argv (or the same command text when it has
    no argv). cwd, agent and session are compared when the record sets them.
    """
    if record.command_argv is not None:
        if list(record.command_argv) != list(argv):
            return False
    elif record.command is not None:
        if record.command.strip() != cmd_text.strip():
            return False
    else:
        return False

    bindings = (
        (record.cwd, cwd),
        (record.agent_id, agent_id),
        (record.session_key, session_key),
    )
    for expected, actual in bindings:
        expected = _normalized(expected)
        if expected is not None and expected != _normalized(actual):
            return False
    return True
