"""Allow/ask/deny policy evaluation."""

from execgate.exec.types import (
    DenyReason,
    ExecApprovalDecision,
    ExecAsk,
    ExecSecurity,
    PolicyDecision,
)

DENIED_PREFIX = "EXEC_DENIED"


def format_denied_message(text: str) -> str:
    return f"{DENIED_PREFIX}: {text}"


def format_allowlist_miss_message(detail: str | None = None) -> str:
    """Allowlist miss message, optionally carrying the parser's reason."""
    if detail:
        return format_denied_message(f"allowlist miss ({detail})")
    return format_denied_message("allowlist miss")


def normalize_security(value: str | None, default: ExecSecurity = "deny") -> ExecSecurity:
    """Unknown or empty values fall back to the default mode."""
    normalized = (value or "").strip().lower()
    if normalized in ("deny", "ask", "allowlist", "full"):
        return normalized  # type: ignore[return-value]
    return default


def normalize_ask(value: str | None, default: ExecAsk = "on-miss") -> ExecAsk:
    normalized = (value or "").strip().lower()
    if normalized in ("off", "on-miss", "always"):
        return normalized  # type: ignore[return-value]
    return default


def normalize_approval_decision(value: str | None) -> ExecApprovalDecision | None:
    normalized = (value or "").strip().lower()
    if normalized in ("allow-once", "allow-always"):
        return normalized  # type: ignore[return-value]
    return None


def _deny(reason: str, message: str, analysis_ok: bool, allowlist_satisfied: bool,
          decision: ExecApprovalDecision | None, blocked: bool) -> PolicyDecision:
    return PolicyDecision(
        allowed=False,
        event_reason=reason,
        error_message=message,
        analysis_ok=analysis_ok,
        allowlist_satisfied=allowlist_satisfied,
        approval_decision=decision,
        windows_shell_wrapper_blocked=blocked,
    )


def evaluate_policy(
    security: ExecSecurity,
    ask: ExecAsk,
    analysis_ok: bool,
    allowlist_satisfied: bool,
    approval_decision: ExecApprovalDecision | None = None,
    approved: bool = False,
    is_windows: bool = False,
    cmd_invocation: bool = False,
) -> PolicyDecision:
    """
    Run the policy guard chain. The first denial wins.

    Order:
    1. security=deny denies everything
    2. a failed analysis can never satisfy the allowlist; on Windows a
       cmd.exe wrapper under allowlist mode is treated the same way
    3. security=ask needs an explicit approval
    4. ask=always needs an explicit approval in every mode
    5. allowlist mode needs the allowlist, or an approval when ask is on
    6. security=full allows
    """
    if not analysis_ok:
        allowlist_satisfied = False

    if security == "deny":
        return _deny(
            DenyReason.SECURITY_DENY.value,
            format_denied_message("security=deny"),
            analysis_ok, allowlist_satisfied, approval_decision, False,
        )

    blocked = False
    if is_windows and security == "allowlist" and cmd_invocation:
        # cmd.exe re-parses its payload, so nothing we analyzed is what runs
        blocked = True
        analysis_ok = False
        allowlist_satisfied = False

    has_approval = approved or approval_decision is not None

    if security == "ask" or ask == "always":
        if not has_approval:
            message = "approval required"
            if blocked:
                message = "cmd.exe invocations require approval in allowlist mode"
            return _deny(
                DenyReason.APPROVAL_REQUIRED.value,
                format_denied_message(message),
                analysis_ok, allowlist_satisfied, approval_decision, blocked,
            )
        if security != "allowlist" or not allowlist_satisfied:
            return PolicyDecision(
                allowed=True,
                approved_by_ask=True,
                analysis_ok=analysis_ok,
                allowlist_satisfied=allowlist_satisfied,
                approval_decision=approval_decision,
                windows_shell_wrapper_blocked=blocked,
            )

    if security == "allowlist":
        if allowlist_satisfied:
            return PolicyDecision(
                allowed=True,
                analysis_ok=analysis_ok,
                allowlist_satisfied=True,
                approval_decision=approval_decision,
            )
        if ask != "off" and has_approval:
            return PolicyDecision(
                allowed=True,
                approved_by_ask=True,
                analysis_ok=analysis_ok,
                allowlist_satisfied=False,
                approval_decision=approval_decision,
                windows_shell_wrapper_blocked=blocked,
            )
        if blocked:
            return _deny(
                DenyReason.APPROVAL_REQUIRED.value,
                format_denied_message("cmd.exe invocations require approval in allowlist mode"),
                analysis_ok, allowlist_satisfied, approval_decision, blocked,
            )
        return _deny(
            DenyReason.ALLOWLIST_MISS.value,
            format_allowlist_miss_message(),
            analysis_ok, allowlist_satisfied, approval_decision, blocked,
        )

    return PolicyDecision(
        allowed=True,
        analysis_ok=analysis_ok,
        allowlist_satisfied=allowlist_satisfied,
        approval_decision=approval_decision,
    )
