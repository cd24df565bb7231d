"""Epic commands.

Create epics, break phases into sub-issues, spawn agents for them and
keep the epic body's phase statuses and progress current. One epic at a
time can be the active epic, whose sub-issue agents are tracked locally.
"""
from __future__ import annotations

from typing import List, Optional

import typer
from rich.markup import escape

from handy_agents.cli.common import (
    build_epic_service,
    cli_errors,
    get_config_or_default,
    get_console,
    print_warnings,
    require_repo,
)
from handy_agents.cli.display import format_phase_status, phase_table, sub_issue_table

app = typer.Typer(
    name="epic",
    help="Epic → phase → sub-issue workflow",
    no_args_is_help=True,
)

console = get_console()

_REPO_HELP = "Tracking repository (default: github.repo)."


def _parse_phase(raw: str, number: int):
    """Parse "Name|description|approach"; description and approach are optional."""
    from handy_agents.epic.models import Phase, PhaseApproach

    parts = [part.strip() for part in raw.split("|")]
    if not parts[0]:
        console.print(f"[red]Error:[/red] Phase {number} has no name: {escape(raw)}")
        raise typer.Exit(1)
    description = parts[1] if len(parts) > 1 else ""
    approach = PhaseApproach.parse(parts[2] if len(parts) > 2 else None)
    return Phase(number=number, name=parts[0], description=description, approach=approach.value)


def _parse_status(value: str):
    from handy_agents.epic.models import PhaseStatus

    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return PhaseStatus(normalized)
    except ValueError:
        valid = ", ".join(s.value for s in PhaseStatus)
        console.print(f"[red]Error:[/red] Invalid status '{escape(value)}'. Valid: {valid}")
        raise typer.Exit(1)


@app.command("create")
def epic_create(
    title: str = typer.Option(..., "--title", "-t", help="Epic title, without the [EPIC] prefix."),
    goal: str = typer.Option(..., "--goal", "-g", help="What the epic achieves."),
    phase: Optional[List[str]] = typer.Option(
        None,
        "--phase",
        help='Phase as "Name|description|approach" (can be repeated).',
    ),
    metric: Optional[List[str]] = typer.Option(None, "--metric", "-m", help="Success metric (can be repeated)."),
    work_repo: Optional[str] = typer.Option(None, "--work-repo", "-w", help="Where the code lives (default: --repo)."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
    label: Optional[List[str]] = typer.Option(None, "--label", "-l", help="Extra label (can be repeated)."),
) -> None:
    """
    Create an epic issue with its phases.

    Example:
        handy-agents epic create -t "Auth rewrite" -g "Replace sessions with tokens" \\
            --phase "Schema|New tables|manual" --phase "API|Endpoints|agent-assisted"
    """
    from handy_agents.epic.models import EpicConfig

    config = get_config_or_default()
    resolved = require_repo(repo, config)
    phases = [_parse_phase(raw, i) for i, raw in enumerate(phase or [], start=1)]
    epic_config = EpicConfig(
        title=title,
        repo=resolved,
        goal=goal,
        phases=phases,
        success_metrics=list(metric or []),
        work_repo=work_repo,
        labels=list(label or []),
    )
    with cli_errors():
        epic = build_epic_service(config).create_epic(epic_config)

    console.print(f"[green]Created epic #{epic.epic_number}[/green] {escape(epic.title)}")
    console.print(f"  {epic.url}")
    console.print(f"  {len(epic.phases)} phase(s), work repo {epic.work_repo}")


@app.command("show")
def epic_show(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
    cached: bool = typer.Option(False, "--cached", help="Show the copy loaded last, without contacting GitHub."),
) -> None:
    """Show an epic and the phases written in its body."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        service = build_epic_service(config)
        epic = service.get_cached_epic(resolved, number) if cached else service.load_epic(resolved, number)

    if epic is None:
        console.print(f"[red]Error:[/red] Epic #{number} has not been loaded on this machine")
        raise typer.Exit(1)
    console.print(f"[bold]#{epic.epic_number} {escape(epic.title)}[/bold]")
    console.print(f"  Tracking: {epic.tracking_repo}")
    console.print(f"  Work:     {epic.work_repo}")
    if epic.url:
        console.print(f"  URL:      {epic.url}")
    if not epic.phases:
        console.print("[dim]No phases.[/dim]")
        return
    console.print(phase_table(epic.phases, "Phases"))


@app.command("status")
def epic_status(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Show per-phase status resolved from sub-issues and pull requests."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        service = build_epic_service(config)
        epic = service.load_epic(resolved, number)
        phases = service.get_epic_phase_status(epic)

    completed = sum(p.completed_count for p in phases)
    total = sum(p.total_count for p in phases)
    console.print(phase_table(phases, f"Epic #{number}: {escape(epic.title)}"))
    console.print(f"{completed}/{total} sub-issues completed")


@app.command("start")
def epic_start(
    number: int = typer.Argument(..., help="Epic issue number."),
    phase: Optional[List[int]] = typer.Option(None, "--phase", help="Phase number to start (default: 1; can be repeated)."),
    spawn: bool = typer.Option(False, "--spawn", help="Spawn an agent for each non-manual sub-issue."),
    worktree_base: Optional[str] = typer.Option(
        None,
        "--worktree-base",
        help="Local git checkout agents work from (default: repo_root).",
    ),
    agent_type: Optional[str] = typer.Option(None, "--agent-type", "-a", help="Agent for agent-assisted phases."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Create sub-issues for phases and optionally spawn agents for them."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        service = build_epic_service(config)
        epic = service.load_epic(resolved, number)
        result = service.start_orchestration(
            epic,
            phases=list(phase or []) or None,
            auto_spawn_agents=spawn,
            worktree_base=worktree_base,
            default_agent_type=agent_type,
        )

    console.print(f"[green]Started[/green] phase(s) {', '.join(str(n) for n in result.started_phases) or '-'}")
    for sub in result.sub_issues:
        console.print(f"  #{sub.issue_number} (phase {sub.phase}, {sub.agent_type}) {escape(sub.title)}")
    for agent in result.spawned_agents:
        console.print(f"  [cyan]{agent.session_name}[/cyan] → #{agent.issue_number} ({agent.agent_type})")
    print_warnings(result.warnings)


@app.command("recover")
def epic_recover(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Rebuild an epic's state from the issue tracker alone."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        info = build_epic_service(config).load_epic_for_recovery(resolved, number)

    progress = info.progress
    console.print(f"[bold]#{number} {escape(info.epic.title)}[/bold]")
    console.print(f"  Progress: {progress.completed}/{progress.total} ({progress.percentage}%)")
    console.print(phase_table(info.epic.phases, "Phases"))
    if info.phases_without_issues:
        console.print(f"Phases without sub-issues: {', '.join(str(n) for n in info.phases_without_issues)}")
    if info.ready_for_agents:
        console.print("Ready for agents: " + ", ".join(f"#{s.issue_number}" for s in info.ready_for_agents))
    if info.in_progress:
        console.print("Being worked: " + ", ".join(f"#{s.issue_number}" for s in info.in_progress))


@app.command("sync")
def epic_sync(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Write resolved phase statuses and progress into the epic body."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        result = build_epic_service(config).update_epic_phase_status_on_github(resolved, number)

    progress = result.progress
    if result.body_updated:
        console.print(f"[green]Updated[/green] epic #{number}")
    else:
        console.print(f"Epic #{number} already up to date")
    for phase in result.phases:
        if phase.number in result.changed_phases:
            console.print(f"  Phase {phase.number}: {format_phase_status(phase.status)}")
    console.print(f"  Progress: {progress.completed}/{progress.total} ({progress.percentage}%)")


@app.command("progress")
def epic_progress(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Recount sub-issues and update the progress line."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        progress = build_epic_service(config).update_epic_progress(resolved, number)
    console.print(f"Epic #{number}: {progress.completed}/{progress.total} sub-issues completed ({progress.percentage}%)")


@app.command("mark")
def epic_mark(
    number: int = typer.Argument(..., help="Epic issue number."),
    phase: int = typer.Argument(..., help="Phase number."),
    status: str = typer.Argument(..., help="not_started, in_progress, ready, completed or skipped."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Set a phase's status in the epic body by hand."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    phase_status = _parse_status(status)
    with cli_errors():
        build_epic_service(config).mark_phase_status(resolved, number, phase, phase_status)
    console.print(f"Phase {phase} of epic #{number}: {format_phase_status(phase_status)}")


# =============================================================================
# Active epic
# =============================================================================


def _print_active(active) -> None:
    progress = active.progress
    console.print(f"[bold]Active epic #{active.epic.epic_number} {escape(active.epic.title)}[/bold]")
    console.print(f"  Tracking: {active.epic.tracking_repo}")
    console.print(f"  Work:     {active.epic.work_repo}")
    console.print(f"  Progress: {progress.completed}/{progress.total} ({progress.percentage}%)")
    console.print(f"  Synced:   {active.synced_at or 'never'}")
    if active.epic.sub_issues:
        console.print(sub_issue_table(active, "Sub-issues"))
    else:
        console.print("[dim]No sub-issues.[/dim]")


@app.command("list")
def epic_list() -> None:
    """List epics loaded on this machine, without contacting GitHub."""
    config = get_config_or_default()
    with cli_errors():
        service = build_epic_service(config)
        epics = service.list_cached_epics()
        active = service.get_active_epic()

    if not epics:
        console.print("[dim]No epics loaded yet.[/dim]")
        return
    for epic in epics:
        marker = "[green]*[/green]" if active and active.key == epic.key else " "
        console.print(f"{marker} {epic.key} {escape(epic.title)} ({len(epic.phases)} phases)")


@app.command("active")
def epic_active() -> None:
    """Show the active epic as of its last sync."""
    config = get_config_or_default()
    with cli_errors():
        active = build_epic_service(config).get_active_epic()
    if active is None:
        console.print("[dim]No active epic.[/dim]")
        return
    _print_active(active)


@app.command("activate")
def epic_activate(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Make an epic the active epic, rebuilt from GitHub."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        active = build_epic_service(config).set_active_epic(resolved, number)
    _print_active(active)


@app.command("deactivate")
def epic_deactivate(
    archive: bool = typer.Option(False, "--archive", help="Keep it in the history of finished epics."),
) -> None:
    """Clear the active epic."""
    config = get_config_or_default()
    with cli_errors():
        cleared = build_epic_service(config).clear_active_epic(archive=archive)
    if cleared is None:
        console.print("[dim]No active epic.[/dim]")
        return
    verb = "Archived" if archive else "Deactivated"
    console.print(f"[green]{verb}[/green] epic {cleared.key}")


@app.command("sync-active")
def epic_sync_active() -> None:
    """Refresh the active epic's sub-issues and progress from GitHub."""
    config = get_config_or_default()
    with cli_errors():
        active = build_epic_service(config).sync_active_epic()
    if active is None:
        console.print("[dim]No active epic.[/dim]")
        return
    _print_active(active)


@app.command("assign-agent")
def epic_assign_agent(
    issue: int = typer.Argument(..., help="Sub-issue number."),
    session: Optional[str] = typer.Argument(None, help="Agent session working it."),
    agent_type: Optional[str] = typer.Option(None, "--agent-type", "-a", help="Agent type in that session."),
    clear: bool = typer.Option(False, "--clear", help="Remove the sub-issue's agent instead."),
) -> None:
    """Record which agent session works a sub-issue of the active epic."""
    if not clear and not session:
        console.print("[red]Error:[/red] Give a session name or --clear")
        raise typer.Exit(1)
    config = get_config_or_default()
    with cli_errors():
        build_epic_service(config).update_epic_sub_issue_agent(issue, None if clear else session, agent_type)
    if clear:
        console.print(f"Cleared agent for #{issue}")
    else:
        console.print(f"#{issue} → [cyan]{escape(session)}[/cyan]")


@app.command("forget")
def epic_forget(
    number: int = typer.Argument(..., help="Epic issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help=_REPO_HELP),
) -> None:
    """Drop an epic from the local cache. The issue is not touched."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        removed = build_epic_service(config).forget_epic(resolved, number)
    if removed is None:
        console.print(f"[dim]Epic #{number} was not cached.[/dim]")
        return
    console.print(f"Forgot epic {removed.key}")
