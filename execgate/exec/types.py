"""Type definitions for exec command security and approval."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

# Security modes
ExecSecurity = Literal["deny", "ask", "allowlist", "full"]

# Ask modes for approval
ExecAsk = Literal["off", "on-miss", "always"]

# Execution host
ExecHost = Literal["local", "companion"]

# Approval decisions (None means no decision was supplied)
ExecApprovalDecision = Literal["allow-once", "allow-always"]

# Where the final argv came from
PlanSource = Literal["allowlist-resolved", "raw"]

EXEC_SECURITY_VALUES: tuple[str, ...] = ("deny", "ask", "allowlist", "full")
EXEC_ASK_VALUES: tuple[str, ...] = ("off", "on-miss", "always")


class DenyReason(str, Enum):
    """Reason codes surfaced to callers. Values are the wire strings."""

    PARSE_ERROR = "parse-error"
    UNSUPPORTED_CONSTRUCT = "unsupported-construct"
    RESOLUTION_MISS = "resolution-miss"
    SECURITY_DENY = "security=deny"
    APPROVAL_REQUIRED = "approval-required"
    ALLOWLIST_MISS = "allowlist-miss"
    EXECUTION_PLAN_MISS = "execution-plan-miss"
    COMPANION_UNAVAILABLE = "companion-unavailable"
    INVALID_REQUEST = "invalid-request"


def permission_reason(capability: str) -> str:
    """Reason code for a missing OS capability."""
    return f"permission:{capability}"


@dataclass
class PolicyConfig:
    """Effective policy for one agent, resolved by the caller."""
    security: ExecSecurity = "deny"
    ask: ExecAsk = "on-miss"
    auto_allow_skills: bool = False


@dataclass
class CommandResolution:
    """Where the first token of a segment points on disk."""
    raw_executable: str
    resolved_path: str | None = None
    executable_name: str = ""
    effective_argv: list[str] = field(default_factory=list)


@dataclass
class CommandSegment:
    """One pipeline stage."""
    raw: str
    argv: list[str]
    resolution: CommandResolution | None = None
    heredoc: bool = False


@dataclass
class CommandAnalysis:
    """Parser output. ok=False is terminal and carries no segments."""
    ok: bool
    reason: str | None = None
    reason_code: DenyReason | None = None
    segments: list[CommandSegment] = field(default_factory=list)
    chains: list[list[CommandSegment]] = field(default_factory=list)


@dataclass
class AllowlistEntry:
    """An entry in the exec allowlist."""
    pattern: str
    created_at: int | None = None
    last_used_at: int | None = None
    usage_count: int = 0
    last_used_command: str | None = None
    last_resolved_path: str | None = None


@dataclass
class SafeBinProfile:
    """Argument-shape constraints for a safe bin.

    An empty profile accepts any arguments but still marks the bin as
    profiled.
    """
    min_positional: int | None = None
    max_positional: int | None = None
    allowed_positionals: list[str] | None = None
    denied_flags: list[str] = field(default_factory=list)
    deny_path_args: bool = False


@dataclass
class SkillBinTrustEntry:
    """A binary shipped by an installed skill."""
    name: str
    resolved_path: str


@dataclass
class SafeBinRuntimePolicy:
    """Merged safe-bin and trust settings for one agent."""
    safe_bins: frozenset[str] = frozenset()
    safe_bin_profiles: dict[str, SafeBinProfile] = field(default_factory=dict)
    trusted_dirs: frozenset[str] = frozenset()
    unprofiled_safe_bins: list[str] = field(default_factory=list)
    unprofiled_interpreter_safe_bins: list[str] = field(default_factory=list)


@dataclass
class AllowlistEvaluation:
    """Result of matching every segment against the allowlist."""
    satisfied: bool
    matches: list[AllowlistEntry] = field(default_factory=list)
    unprofiled_hits: list[str] = field(default_factory=list)


@dataclass
class PolicyDecision:
    """Verdict of the policy evaluator."""
    allowed: bool
    event_reason: str | None = None
    error_message: str = ""
    approved_by_ask: bool = False
    analysis_ok: bool = False
    allowlist_satisfied: bool = False
    approval_decision: ExecApprovalDecision | None = None
    windows_shell_wrapper_blocked: bool = False


@dataclass
class ExecutionPlan:
    """The exact argv handed to the process runner."""
    argv: list[str]
    source: PlanSource = "raw"


@dataclass
class ApprovalRecord:
    """The request an approval was originally granted for."""
    command: str | None = None
    command_argv: list[str] | None = None
    cwd: str | None = None
    agent_id: str | None = None
    session_key: str | None = None


@dataclass
class ExecRequest:
    """A request to execute a command."""
    command: str | list[str]
    raw_command: str | None = None
    cwd: str | None = None
    env: dict[str, str] | None = None
    timeout_ms: int | None = None
    agent_id: str | None = None
    session_key: str | None = None
    approval_decision: ExecApprovalDecision | None = None
    approved: bool = False
    needs_screen_recording: bool = False
    required_permissions: list[str] = field(default_factory=list)
    approval_record: ApprovalRecord | None = None


@dataclass
class ExecVerdict:
    """Pre-execution answer returned to the caller."""
    ok: bool
    reason: str | None = None
    message: str = ""
    detail: str | None = None


@dataclass
class RunResult:
    """Result of running a planned argv."""
    success: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    timed_out: bool = False
    truncated: bool = False
