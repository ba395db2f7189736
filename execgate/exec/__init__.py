"""Secure command execution system."""

from execgate.exec.types import (
    ExecSecurity,
    ExecAsk,
    ExecHost,
    ExecApprovalDecision,
    DenyReason,
    PolicyConfig,
    CommandAnalysis,
    CommandSegment,
    CommandResolution,
    AllowlistEntry,
    SafeBinProfile,
    SafeBinRuntimePolicy,
    SkillBinTrustEntry,
    ApprovalRecord,
    ExecRequest,
    ExecVerdict,
    ExecutionPlan,
    RunResult,
)
from execgate.exec.parser import analyze_shell_command, analyze_argv_command
from execgate.exec.resolver import resolve_executable_path, resolve_command_resolution_from_argv
from execgate.exec.safe_bins import DEFAULT_SAFE_BINS, resolve_safe_bin_runtime_policy
from execgate.exec.allowlist import evaluate_exec_allowlist, resolve_allow_always_patterns
from execgate.exec.policy import evaluate_policy
from execgate.exec.planner import plan_execution
from execgate.exec.store import (
    AllowlistStore,
    AllowlistStoreError,
    FileAllowlistStore,
    InMemoryAllowlistStore,
)
from execgate.exec.runner import run_command
from execgate.exec.engine import ExecEngine, ExecDecision, ExecOutcome

__all__ = [
    "ExecSecurity",
    "ExecAsk",
    "ExecHost",
    "ExecApprovalDecision",
    "DenyReason",
    "PolicyConfig",
    "CommandAnalysis",
    "CommandSegment",
    "CommandResolution",
    "AllowlistEntry",
    "SafeBinProfile",
    "SafeBinRuntimePolicy",
    "SkillBinTrustEntry",
    "ApprovalRecord",
    "ExecRequest",
    "ExecVerdict",
    "ExecutionPlan",
    "RunResult",
    "analyze_shell_command",
    "analyze_argv_command",
    "resolve_executable_path",
    "resolve_command_resolution_from_argv",
    "DEFAULT_SAFE_BINS",
    "resolve_safe_bin_runtime_policy",
    "evaluate_exec_allowlist",
    "resolve_allow_always_patterns",
    "evaluate_policy",
    "plan_execution",
    "AllowlistStore",
    "AllowlistStoreError",
    "FileAllowlistStore",
    "InMemoryAllowlistStore",
    "run_command",
    "ExecEngine",
    "ExecDecision",
    "ExecOutcome",
]
