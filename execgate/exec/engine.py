"""Exec engine: analysis, policy, planning and execution in one place."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from functools import partial

from loguru import logger

from execgate.exec.allowlist import evaluate_exec_allowlist, resolve_allow_always_patterns
from execgate.exec.command import (
    RunCommand,
    build_exec_env,
    is_cmd_exe_invocation,
    resolve_run_command,
    sanitize_env_overrides,
)
from execgate.exec.parser import analyze_argv_command, analyze_shell_command
from execgate.exec.planner import apply_output_truncation, approval_matches_request, plan_execution
from execgate.exec.policy import evaluate_policy, format_allowlist_miss_message, format_denied_message
from execgate.exec.resolver import is_windows_platform
from execgate.exec.runner import DEFAULT_MAX_OUTPUT_CHARS, DEFAULT_TIMEOUT_MS, run_command
from execgate.exec.safe_bins import resolve_safe_bin_runtime_policy
from execgate.exec.store import AllowlistStore, AllowlistStoreError, record_allowlist_use
from execgate.exec.types import (
    AllowlistEntry,
    AllowlistEvaluation,
    CommandAnalysis,
    CommandSegment,
    DenyReason,
    ExecRequest,
    ExecutionPlan,
    ExecVerdict,
    PolicyConfig,
    PolicyDecision,
    RunResult,
    SafeBinRuntimePolicy,
    SkillBinTrustEntry,
    permission_reason,
)

Runner = Callable[[list[str], str | None, dict[str, str] | None, int | None], Awaitable[RunResult]]

# Returns None when the companion host cannot be reached
CompanionHost = Callable[[ExecutionPlan, ExecRequest], Awaitable[RunResult | None]]


@dataclass
class ExecDecision:
    """Everything evaluate() learned about a request."""
    verdict: ExecVerdict
    plan: ExecutionPlan | None = None
    cmd_text: str = ""
    segments: list[CommandSegment] = field(default_factory=list)
    matches: list[AllowlistEntry] = field(default_factory=list)
    env: dict[str, str] | None = None
    policy: PolicyDecision | None = None


@dataclass
class ExecOutcome:
    """Result of execute()."""
    verdict: ExecVerdict
    result: RunResult | None = None
    executed: bool = False
    cancelled: bool = False
    host: str | None = None


def _denied(reason: str, message: str, detail: str | None = None, **kwargs) -> ExecDecision:
    return ExecDecision(verdict=ExecVerdict(ok=False, reason=reason, message=message, detail=detail), **kwargs)


class ExecEngine:
    """
    Decides whether a command may run, and with what argv.

    Nothing the engine runs comes from anywhere but the plan it built:
    allowlist-only approvals run the resolved argv, approvals granted by a
    human run the command as the human saw it.
    """

    def __init__(
        self,
        store: AllowlistStore,
        runner: Runner | None = None,
        skill_bins: list[SkillBinTrustEntry] | None = None,
        companion: CompanionHost | None = None,
        companion_enforced: bool = False,
        companion_fallback_allowed: bool = True,
        platform: str | None = None,
        granted_permissions: Iterable[str] = (),
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    ):
        self.store = store
        self.runner: Runner = runner or partial(run_command, max_output_chars=max_output_chars)
        self.skill_bins = list(skill_bins or [])
        self.companion = companion
        self.companion_enforced = companion_enforced
        self.companion_fallback_allowed = companion_fallback_allowed
        self.platform = platform
        self.granted_permissions = frozenset(granted_permissions)
        self.default_timeout_ms = default_timeout_ms

    # ── Analysis ────────────────────────────────────────────────────

    def _analyze(
        self,
        command: RunCommand,
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> CommandAnalysis:
        if command.shell_command is not None:
            return analyze_shell_command(command.shell_command, cwd, env, self.platform)
        return analyze_argv_command(command.argv, cwd, env, self.platform)

    def _match_allowlist(
        self,
        analysis: CommandAnalysis,
        policy: PolicyConfig,
        runtime: SafeBinRuntimePolicy,
        cwd: str | None,
    ) -> AllowlistEvaluation:
        if policy.security != "allowlist" or not analysis.ok:
            return AllowlistEvaluation(satisfied=False)
        return evaluate_exec_allowlist(
            analysis,
            self.store.load(),
            runtime,
            cwd=cwd,
            skill_bins=self.skill_bins,
            auto_allow_skills=policy.auto_allow_skills,
            platform=self.platform,
        )

    def _inspect(
        self,
        command: RunCommand,
        policy: PolicyConfig,
        runtime: SafeBinRuntimePolicy,
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> tuple[CommandAnalysis, AllowlistEvaluation]:
        analysis = self._analyze(command, cwd, env)
        return analysis, self._match_allowlist(analysis, policy, runtime, cwd)

    def _persist_allow_always(self, segments: list[CommandSegment]) -> None:
        for pattern in resolve_allow_always_patterns(segments, self.platform):
            self.store.append(pattern)

    def _missing_permission(self, request: ExecRequest) -> str | None:
        required = list(request.required_permissions)
        if request.needs_screen_recording:
            required.insert(0, "screenRecording")
        for capability in required:
            if capability not in self.granted_permissions:
                return capability
        return None

    # ── Public API ──────────────────────────────────────────────────

    async def evaluate(
        self,
        request: ExecRequest,
        policy: PolicyConfig,
        runtime: SafeBinRuntimePolicy | None = None,
    ) -> ExecDecision:
        """Decide on a request without running it."""
        command = resolve_run_command(request.command, request.raw_command, self.platform)
        if not command.ok:
            logger.warning(f"Invalid exec request: {command.message}")
            return _denied(DenyReason.INVALID_REQUEST.value, f"INVALID_REQUEST: {command.message}")

        cwd = request.cwd.strip() if request.cwd and request.cwd.strip() else None
        overrides = sanitize_env_overrides(request.env)
        runtime = runtime or resolve_safe_bin_runtime_policy()

        analysis, evaluation = await asyncio.to_thread(
            self._inspect, command, policy, runtime, cwd, overrides,
        )
        segments = analysis.segments
        context = {"cmd_text": command.cmd_text, "segments": segments}

        approved = request.approved
        approval_decision = request.approval_decision
        if request.approval_record is not None and not approval_matches_request(
            request.approval_record,
            command.cmd_text,
            command.argv,
            cwd=cwd,
            agent_id=request.agent_id,
            session_key=request.session_key,
        ):
            logger.warning(f"Approval record does not match request, ignoring it: {command.cmd_text}")
            approved = False
            approval_decision = None

        if isinstance(request.command, list):
            cmd_invocation = is_cmd_exe_invocation(command.argv)
        else:
            cmd_invocation = bool(segments) and is_cmd_exe_invocation(segments[0].argv)

        decision = evaluate_policy(
            security=policy.security,
            ask=policy.ask,
            analysis_ok=analysis.ok,
            allowlist_satisfied=evaluation.satisfied,
            approval_decision=approval_decision,
            approved=approved,
            is_windows=is_windows_platform(self.platform),
            cmd_invocation=cmd_invocation,
        )
        context["policy"] = decision

        if not decision.allowed:
            message = decision.error_message
            detail = None
            if decision.event_reason == DenyReason.ALLOWLIST_MISS.value:
                if not analysis.ok:
                    message = format_allowlist_miss_message(analysis.reason)
                    detail = analysis.reason_code.value if analysis.reason_code else None
                elif any(s.resolution is None or not s.resolution.resolved_path for s in segments):
                    detail = DenyReason.RESOLUTION_MISS.value
            logger.warning(f"Exec denied ({decision.event_reason}): {command.cmd_text}")
            return _denied(decision.event_reason or DenyReason.APPROVAL_REQUIRED.value, message, detail, **context)

        plan = plan_execution(
            policy.security,
            decision,
            analysis,
            command.argv,
            command.shell_command,
            self.platform,
            reanalyze=lambda text: analyze_shell_command(text, cwd, overrides, self.platform),
        )
        if plan is None:
            logger.warning(f"Exec denied (execution-plan-miss): {command.cmd_text}")
            return _denied(
                DenyReason.EXECUTION_PLAN_MISS.value,
                format_denied_message("execution plan mismatch"),
                **context,
            )

        if decision.approval_decision == "allow-always" and policy.security == "allowlist" and decision.analysis_ok:
            await asyncio.to_thread(self._persist_allow_always, segments)

        missing = self._missing_permission(request)
        if missing:
            logger.warning(f"Exec denied (missing permission {missing}): {command.cmd_text}")
            return _denied(permission_reason(missing), f"PERMISSION_MISSING: {missing}", **context)

        logger.info(f"Exec allowed ({plan.source}) for agent {request.agent_id or 'default'}: {command.cmd_text}")
        return ExecDecision(
            verdict=ExecVerdict(ok=True),
            plan=plan,
            matches=evaluation.matches,
            env=build_exec_env(overrides),
            **context,
        )

    def complete(self, decision: ExecDecision, result: RunResult) -> RunResult:
        """Finish a run: mark truncation and record allowlist usage."""
        apply_output_truncation(result)
        if decision.matches:
            first = decision.segments[0].resolution if decision.segments else None
            try:
                record_allowlist_use(
                    self.store,
                    decision.matches,
                    decision.cmd_text,
                    first.resolved_path if first else None,
                )
            except AllowlistStoreError as e:
                logger.warning(f"Failed to record allowlist use: {e}")
        return result

    async def execute(
        self,
        request: ExecRequest,
        policy: PolicyConfig,
        runtime: SafeBinRuntimePolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecOutcome:
        """
        Evaluate and run a request.

        Security flow:
        1. Evaluate (analysis, allowlist, policy, plan, permissions)
        2. Stop if cancelled before anything is spawned
        3. Route to the companion host when one is configured
        4. Otherwise run the plan locally with a finite timeout
        """
        decision = await self.evaluate(request, policy, runtime)
        if not decision.verdict.ok or decision.plan is None:
            return ExecOutcome(verdict=decision.verdict)

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Exec cancelled before start: {decision.cmd_text}")
            return ExecOutcome(verdict=decision.verdict, cancelled=True)

        if self.companion is not None or self.companion_enforced:
            response = await self.companion(decision.plan, request) if self.companion else None
            if response is not None:
                result = await asyncio.to_thread(self.complete, decision, response)
                return ExecOutcome(verdict=decision.verdict, result=result, executed=True, host="companion")
            if self.companion_enforced or not self.companion_fallback_allowed:
                logger.warning(f"Exec denied (companion-unavailable): {decision.cmd_text}")
                return ExecOutcome(verdict=ExecVerdict(
                    ok=False,
                    reason=DenyReason.COMPANION_UNAVAILABLE.value,
                    message="COMPANION_UNAVAILABLE: companion exec host unreachable",
                ))
            logger.info("Companion exec host unreachable, running locally")

        timeout_ms = request.timeout_ms or self.default_timeout_ms
        cwd = request.cwd.strip() if request.cwd and request.cwd.strip() else None
        result = await self.runner(decision.plan.argv, cwd, decision.env, timeout_ms)
        result = await asyncio.to_thread(self.complete, decision, result)
        return ExecOutcome(verdict=decision.verdict, result=result, executed=True, host="local")
