"""CLI commands for execgate."""

import asyncio
import json
import shlex
import stat
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from execgate import __logo__, __version__
from execgate.config.loader import get_config_path, load_config, save_config
from execgate.config.schema import (
    AgentEntry,
    Config,
    SafeBinProfileConfig,
    resolve_agent_runtime,
    resolve_exec_policy,
)
from execgate.exec.engine import ExecEngine
from execgate.exec.safe_bins import DEFAULT_SAFE_BIN_PROFILES, is_interpreter_like_safe_bin
from execgate.exec.store import FileAllowlistStore, GLOBAL_AGENT_ID
from execgate.exec.types import EXEC_ASK_VALUES, EXEC_SECURITY_VALUES, ExecRequest, SafeBinProfile

app = typer.Typer(
    name="execgate",
    help=f"{__logo__} execgate - Exec command security & approval engine",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} execgate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """execgate - Exec command security & approval engine."""
    pass


def _store_for(config: Config, agent: str | None) -> FileAllowlistStore:
    return FileAllowlistStore(config.approvals_path, agent)


def _build_engine(config: Config, agent: str | None, platform: str | None = None) -> ExecEngine:
    exec_config = config.tools.exec
    # No companion transport ships with the CLI, so a companion host that may
    # not fall back to local execution is always unreachable
    companion_required = exec_config.host_enforced or not exec_config.host_fallback_allowed
    return ExecEngine(
        store=_store_for(config, agent),
        companion_enforced=exec_config.host == "companion" and companion_required,
        companion_fallback_allowed=exec_config.host_fallback_allowed,
        platform=platform,
        default_timeout_ms=exec_config.timeout_seconds * 1000,
        max_output_chars=exec_config.max_output_chars,
    )


def _build_request(
    command: str,
    argv_mode: bool,
    agent: str | None,
    cwd: str | None,
    approve: bool,
    always: bool = False,
    timeout: int | None = None,
) -> ExecRequest:
    return ExecRequest(
        command=shlex.split(command) if argv_mode else command,
        cwd=cwd,
        agent_id=agent,
        approved=approve,
        approval_decision="allow-always" if always else ("allow-once" if approve else None),
        timeout_ms=timeout * 1000 if timeout else None,
    )


def _print_verdict(verdict) -> None:
    if verdict.ok:
        console.print("[green]✓[/green] Allowed")
        return
    console.print(f"[red]✗[/red] Denied: [bold]{verdict.reason}[/bold]")
    if verdict.message:
        console.print(f"  [dim]{verdict.message}[/dim]")
    if verdict.detail:
        console.print(f"  [dim]detail: {verdict.detail}[/dim]")


# ============================================================================
# Check / Run
# ============================================================================


@app.command()
def check(
    command: str = typer.Argument(..., help="Command text to check"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
    cwd: str = typer.Option(None, "--cwd", help="Working directory"),
    platform: str = typer.Option(None, "--platform", help="Platform to evaluate for (e.g. linux, win32)"),
    argv_mode: bool = typer.Option(False, "--argv", help="Treat COMMAND as an argv, split like a shell would"),
    approve: bool = typer.Option(False, "--approve", help="Evaluate as if approved once"),
):
    """Show how a command would be analyzed and decided, without running it."""
    config = load_config()
    engine = _build_engine(config, agent, platform)
    policy = resolve_exec_policy(config, agent)
    runtime = resolve_agent_runtime(config, agent)
    request = _build_request(command, argv_mode, agent, cwd, approve)

    decision = asyncio.run(engine.evaluate(request, policy, runtime))

    console.print(f"Security: [cyan]{policy.security}[/cyan]  Ask: [cyan]{policy.ask}[/cyan]")
    if decision.segments:
        table = Table(title="Command Analysis")
        table.add_column("#", style="dim")
        table.add_column("Argv", style="cyan")
        table.add_column("Resolved")
        table.add_column("Heredoc")
        for index, segment in enumerate(decision.segments, start=1):
            resolved = segment.resolution.resolved_path if segment.resolution else None
            table.add_row(
                str(index),
                " ".join(segment.argv),
                resolved or "[red]unresolved[/red]",
                "yes" if segment.heredoc else "",
            )
        console.print(table)

    _print_verdict(decision.verdict)
    if decision.plan:
        console.print(f"Plan ({decision.plan.source}): [cyan]{json.dumps(decision.plan.argv)}[/cyan]")
    if not decision.verdict.ok:
        raise typer.Exit(1)


@app.command()
def run(
    command: str = typer.Argument(..., help="Command text to run"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
    cwd: str = typer.Option(None, "--cwd", help="Working directory"),
    argv_mode: bool = typer.Option(False, "--argv", help="Treat COMMAND as an argv, split like a shell would"),
    approve: bool = typer.Option(False, "--approve", help="Approve this run once"),
    always: bool = typer.Option(False, "--always", help="Approve and add the resolved binaries to the allowlist"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="Timeout in seconds"),
):
    """Evaluate a command and run it if allowed."""
    config = load_config()
    engine = _build_engine(config, agent)
    policy = resolve_exec_policy(config, agent)
    runtime = resolve_agent_runtime(config, agent)
    request = _build_request(command, argv_mode, agent, cwd, approve or always, always, timeout)

    outcome = asyncio.run(engine.execute(request, policy, runtime))
    if not outcome.verdict.ok:
        _print_verdict(outcome.verdict)
        raise typer.Exit(1)

    result = outcome.result
    if result is None:
        console.print("[yellow]Command was not started[/yellow]")
        raise typer.Exit(1)
    if result.stdout:
        console.print(result.stdout, end="", markup=False, highlight=False)
    if result.stderr:
        console.print(result.stderr, end="", style="red", markup=False, highlight=False)
    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")
    raise typer.Exit(result.exit_code if result.exit_code is not None else 1)


# ============================================================================
# Exec Approvals Commands
# ============================================================================

approvals_app = typer.Typer(help="Manage command execution approvals")
app.add_typer(approvals_app, name="approvals")


@approvals_app.command("status")
def approvals_status(
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
):
    """Show exec approvals configuration."""
    config = load_config()
    policy = resolve_exec_policy(config, agent)
    runtime = resolve_agent_runtime(config, agent)
    store = _store_for(config, agent)
    entries = store.load()

    console.print("\n[bold cyan]Exec Approvals Configuration[/bold cyan]")
    console.print("─" * 40)
    console.print(f"Agent: [cyan]{store.agent_id}[/cyan]")
    console.print(f"Security: [cyan]{policy.security}[/cyan]")
    console.print(f"Ask mode: [cyan]{policy.ask}[/cyan]")
    console.print(f"Auto-allow skills: [cyan]{policy.auto_allow_skills}[/cyan]")
    console.print(f"Host: [cyan]{config.tools.exec.host}[/cyan]")
    console.print(f"Safe bins: [cyan]{len(runtime.safe_bins)}[/cyan]")
    console.print(f"Trusted dirs: [cyan]{len(runtime.trusted_dirs)}[/cyan]")
    console.print(f"Allowlist entries: [cyan]{len(entries)}[/cyan]")
    console.print(f"Allowlist file: {store.path} {'[green]✓[/green]' if store.path.exists() else '[dim]not created[/dim]'}")

    if policy.security == "deny":
        console.print("\n[yellow]⚠️  Command execution is currently DENIED[/yellow]")
        console.print("[dim]Run 'execgate approvals set --security allowlist' to enable[/dim]")


@approvals_app.command("set")
def approvals_set(
    security: str = typer.Option(None, "--security", "-s", help="Security mode: deny, ask, allowlist, full"),
    ask: str = typer.Option(None, "--ask", help="Ask mode: off, on-miss, always"),
    agent: str = typer.Option(None, "--agent", "-a", help="Set for one agent instead of globally"),
):
    """Update exec approvals configuration."""
    if security and security not in EXEC_SECURITY_VALUES:
        console.print(f"[red]Invalid security mode: {security}[/red]")
        raise typer.Exit(1)
    if ask and ask not in EXEC_ASK_VALUES:
        console.print(f"[red]Invalid ask mode: {ask}[/red]")
        raise typer.Exit(1)

    config = load_config()
    if agent:
        entry = config.get_agent(agent)
        if entry is None:
            entry = AgentEntry(id=agent)
            config.agents.agent_list.append(entry)
        target = entry.tools.exec
    else:
        target = config.tools.exec

    scope = f" for agent [cyan]{agent}[/cyan]" if agent else ""
    if security:
        target.security = security
        console.print(f"[green]✓[/green] Security set to [cyan]{security}[/cyan]{scope}")
    if ask:
        target.ask = ask
        console.print(f"[green]✓[/green] Ask mode set to [cyan]{ask}[/cyan]{scope}")

    save_config(config)


@approvals_app.command("list")
def approvals_list(
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id ('*' for global entries)"),
):
    """List allowlist entries."""
    config = load_config()
    store = _store_for(config, agent)
    entries = store.load()

    if not entries:
        console.print("[dim]No allowlist entries.[/dim]")
        console.print("[dim]Commands will require approval (if ask mode is on-miss or always)[/dim]")
        return

    table = Table(title=f"Exec Allowlist ({store.agent_id})")
    table.add_column("Pattern", style="cyan")
    table.add_column("Uses", justify="right")
    table.add_column("Last Used")
    table.add_column("Command")

    for entry in entries:
        last_used = ""
        if entry.last_used_at:
            last_used = time.strftime("%Y-%m-%d %H:%M", time.localtime(entry.last_used_at / 1000))
        cmd = entry.last_used_command or ""
        if len(cmd) > 40:
            cmd = cmd[:40] + "..."
        table.add_row(entry.pattern, str(entry.usage_count), last_used, cmd)

    console.print(table)


@approvals_app.command("add")
def approvals_add(
    pattern: str = typer.Argument(..., help="Path pattern to allow (supports glob)"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id ('*' for all agents)"),
):
    """Add a pattern to the allowlist."""
    if not any(sep in pattern for sep in ("/", "\\", "~")):
        console.print(f"[yellow]Pattern {pattern} has no path separator; only path patterns match[/yellow]")
        console.print("[dim]Use a path such as /usr/bin/git or ~/bin/*[/dim]")
        raise typer.Exit(1)

    config = load_config()
    store = _store_for(config, agent)
    if store.append(pattern):
        console.print(f"[green]✓[/green] Added [cyan]{pattern}[/cyan] to allowlist ({store.agent_id})")
    else:
        console.print(f"[dim]{pattern} is already in the allowlist[/dim]")


@approvals_app.command("remove")
def approvals_remove(
    pattern: str = typer.Argument(..., help="Pattern to remove"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id ('*' for global entries)"),
):
    """Remove a pattern from the allowlist."""
    config = load_config()
    store = _store_for(config, agent)

    if store.remove(pattern):
        console.print(f"[green]✓[/green] Removed [cyan]{pattern}[/cyan] from allowlist")
    else:
        console.print(f"[yellow]Pattern not found: {pattern}[/yellow]")


def _describe_profile(profile: SafeBinProfile | None) -> str:
    if profile is None:
        return "[yellow]unprofiled[/yellow]"
    parts = []
    if profile.min_positional is not None:
        parts.append(f"min {profile.min_positional}")
    if profile.max_positional is not None:
        parts.append(f"max {profile.max_positional}")
    if profile.allowed_positionals is not None:
        parts.append(f"only {', '.join(profile.allowed_positionals) or '(none)'}")
    if profile.denied_flags:
        parts.append(f"deny {' '.join(profile.denied_flags)}")
    if profile.deny_path_args:
        parts.append("no paths")
    return "; ".join(parts) or "any arguments"


@approvals_app.command("safe-bins")
def approvals_safe_bins(
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id"),
):
    """List safe bins and their argument profiles."""
    config = load_config()
    runtime = resolve_agent_runtime(config, agent)

    if not runtime.safe_bins:
        console.print("[dim]No safe bins configured.[/dim]")
        return

    table = Table(title="Safe Bins")
    table.add_column("Name", style="cyan")
    table.add_column("Profile")
    for name in sorted(runtime.safe_bins):
        table.add_row(name, _describe_profile(runtime.safe_bin_profiles.get(name)))
    console.print(table)
    console.print("\n[dim]Safe bins are allowed by name when invoked without a path[/dim]")
    console.print("[dim]and their arguments fit the profile.[/dim]")


# ============================================================================
# Doctor
# ============================================================================


@app.command()
def doctor(
    fix: bool = typer.Option(False, "--fix", help="Scaffold empty profiles for unprofiled custom safe bins"),
):
    """Check exec configuration for risky settings."""
    config_path = get_config_path()
    config = load_config()
    exec_config = config.tools.exec
    problems = 0

    console.print(f"{__logo__} execgate doctor\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[dim]defaults[/dim]'}")

    if exec_config.security == "full":
        console.print("[yellow]⚠️  security=full runs any command without checks[/yellow]")
        problems += 1

    scopes = [("global", exec_config.safe_bins, exec_config.safe_bin_profiles)]
    scopes += [
        (f"agent {entry.id}", entry.tools.exec.safe_bins, entry.tools.exec.safe_bin_profiles or {})
        for entry in config.agents.agent_list
    ]

    scaffolded = 0
    for label, bins, profiles in scopes:
        for name in bins or []:
            key = name.strip().lower()
            if is_interpreter_like_safe_bin(key):
                console.print(f"[red]✗[/red] {label}: safe bin [cyan]{key}[/cyan] is an interpreter; remove it")
                problems += 1
                continue
            if key in profiles or key in exec_config.safe_bin_profiles or key in DEFAULT_SAFE_BIN_PROFILES:
                continue
            console.print(f"[yellow]⚠️  {label}: safe bin [cyan]{key}[/cyan] has no argument profile[/yellow]")
            problems += 1
            if fix:
                exec_config.safe_bin_profiles[key] = SafeBinProfileConfig(deny_path_args=True)
                scaffolded += 1

    for directory in exec_config.trusted_dirs:
        path = Path(directory).expanduser()
        if not path.is_dir():
            console.print(f"[yellow]⚠️  trusted dir {path} does not exist[/yellow]")
            problems += 1
        elif path.stat().st_mode & stat.S_IWOTH:
            console.print(f"[red]✗[/red] trusted dir {path} is world-writable")
            problems += 1

    store = FileAllowlistStore(config.approvals_path, GLOBAL_AGENT_ID)
    if store.path.exists():
        try:
            json.loads(store.path.read_text(encoding="utf-8"))
            console.print(f"Allowlist file: {store.path} [green]✓[/green]")
        except (OSError, json.JSONDecodeError) as e:
            console.print(f"[red]✗[/red] Allowlist file {store.path} is unreadable: {e}")
            problems += 1

    if scaffolded:
        save_config(config)
        console.print(f"[green]✓[/green] Added {scaffolded} empty profile(s); edit them in {config_path}")

    if problems:
        console.print(f"\n[yellow]{problems} issue(s) found[/yellow]")
        if not fix:
            raise typer.Exit(1)
    else:
        console.print("\n[green]✓[/green] No issues found")


if __name__ == "__main__":
    app()
