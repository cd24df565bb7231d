"""Agent session commands.

Spawn, list, recover, clean up and talk to agent sessions.
Heavy modules are imported inside the commands.
"""
from __future__ import annotations

from typing import List, Optional

import typer
from rich.markup import escape
from rich.table import Table

from handy_agents.cli.common import (
    build_orchestrator,
    cli_errors,
    get_config_or_default,
    get_console,
    print_warnings,
)
from handy_agents.cli.display import format_recovery_action

app = typer.Typer(
    name="agent",
    help="Spawn and manage agent sessions",
    no_args_is_help=True,
)

console = get_console()


@app.command("spawn")
def agent_spawn(
    issue_ref: str = typer.Argument(
        ...,
        help="Issue in owner/repo#number form.",
    ),
    agent_type: Optional[str] = typer.Option(
        None,
        "--agent-type",
        "-a",
        help="Agent to run (default: agents.default_type).",
    ),
    sandbox: Optional[bool] = typer.Option(
        None,
        "--sandbox/--no-sandbox",
        help="Run inside a container (default: sandbox.enabled).",
    ),
    port: Optional[List[str]] = typer.Option(
        None,
        "--port",
        help="Container port to expose, e.g. 3000 or 8080:80 (can be repeated).",
    ),
    base_branch: Optional[str] = typer.Option(
        None,
        "--base",
        help="Branch to fork the worktree from.",
    ),
    reuse_branch: bool = typer.Option(
        False,
        "--reuse-branch",
        help="Check out the issue branch if it exists without a worktree.",
    ),
) -> None:
    """
    Spawn an agent for an issue in its own worktree and session.

    Example:
        handy-agents agent spawn acme/widgets#42 --sandbox --port 3000
    """
    from handy_agents.orchestrator import SpawnOptions

    config = get_config_or_default()
    with cli_errors():
        result = build_orchestrator(config).spawn(
            issue_ref,
            SpawnOptions(agent_type=agent_type, sandbox=sandbox, ports=port or [],
                         base_branch=base_branch, reuse_branch=reuse_branch),
        )

    console.print(f"[green]Spawned[/green] {result.agent_type} for {result.issue_ref}: {escape(result.issue_title)}")
    console.print(f"  Session:  [cyan]{result.session}[/cyan]")
    console.print(f"  Worktree: {result.worktree.path} ({result.worktree.branch})")
    console.print(f"  Machine:  {result.machine_id}")
    if result.sandboxed and result.sandbox:
        console.print(
            f"  Sandbox:  {result.sandbox.container_name} "
            f"ports {result.sandbox.port_range[0]}-{result.sandbox.port_range[1]}"
        )
    print_warnings(result.warnings)


@app.command("list")
def agent_list(
    local: bool = typer.Option(False, "--local", help="Only sessions started on this machine."),
    remote: bool = typer.Option(False, "--remote", help="Only sessions started on other machines."),
) -> None:
    """List managed agent sessions."""
    config = get_config_or_default()
    orchestrator = build_orchestrator(config)
    with cli_errors():
        if local:
            statuses = orchestrator.list_local_agent_statuses()
        elif remote:
            statuses = orchestrator.list_remote_agent_statuses()
        else:
            statuses = orchestrator.list_agent_statuses()

    if not statuses:
        console.print("[dim]No agent sessions.[/dim]")
        return

    table = Table(title="Agent Sessions", show_header=True, header_style="bold")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Issue")
    table.add_column("Agent")
    table.add_column("Machine", style="dim")
    table.add_column("State", no_wrap=True)
    table.add_column("Worktree", style="dim")
    for status in statuses:
        state = "[green]running[/green]" if status.is_alive else "[yellow]idle[/yellow]"
        if status.is_attached:
            state += " (attached)"
        if not status.is_local:
            state += " [dim]remote[/dim]"
        table.add_row(
            status.session,
            status.issue_ref or "-",
            status.agent_type,
            status.machine_id or "unknown",
            state,
            status.worktree or "-",
        )
    console.print(table)


@app.command("recover")
def agent_recover(
    auto_restart: bool = typer.Option(False, "--auto-restart", help="Restart dead agents with intact worktrees."),
    auto_cleanup: bool = typer.Option(False, "--auto-cleanup", help="Kill dead sessions whose worktree is gone."),
) -> None:
    """
    Classify every local session and optionally act on it.

    Sessions from other machines and sessions with incomplete metadata
    are only reported.
    """
    config = get_config_or_default()
    with cli_errors():
        results = build_orchestrator(config).recover_all(auto_restart=auto_restart, auto_cleanup=auto_cleanup)

    if not results:
        console.print("[dim]No sessions to recover.[/dim]")
        return

    table = Table(title="Recovery", show_header=True, header_style="bold")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Action", no_wrap=True)
    table.add_column("Done", justify="center")
    table.add_column("Details")
    for result in results:
        table.add_row(
            result.session,
            format_recovery_action(result.action),
            "✓" if result.performed else "-",
            result.message,
        )
    console.print(table)


@app.command("cleanup")
def agent_cleanup(
    session: str = typer.Argument(..., help="Session name."),
    remove_worktree: bool = typer.Option(False, "--remove-worktree", help="Also remove the worktree."),
    delete_branch: bool = typer.Option(False, "--delete-branch", help="Also delete the branch."),
) -> None:
    """Kill an agent session and optionally remove its worktree."""
    config = get_config_or_default()
    with cli_errors():
        result = build_orchestrator(config).cleanup(
            session, remove_worktree=remove_worktree, delete_branch=delete_branch
        )

    console.print(f"[green]Cleaned up[/green] {session}")
    if result.container_removed:
        console.print("  Sandbox container removed")
    if result.worktree_removed:
        console.print("  Worktree removed" + (" (branch deleted)" if result.branch_deleted else ""))
    print_warnings(result.warnings)


@app.command("complete")
def agent_complete(
    session: str = typer.Argument(..., help="Session name."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Pull request title."),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="Pull request description."),
    draft: bool = typer.Option(False, "--draft", help="Open the pull request as a draft."),
) -> None:
    """Push the agent's branch and open a pull request that closes its issue."""
    from handy_agents.cli.common import get_cli_logger
    from handy_agents.lifecycle import AgentLifecycle

    config = get_config_or_default()
    with cli_errors():
        lifecycle = AgentLifecycle(build_orchestrator(config), logger=get_cli_logger("lifecycle", config))
        result = lifecycle.complete_agent_work(session, title=title, body=body, draft=draft)

    console.print(f"[green]Pull request #{result.pull_request.number}[/green] {result.pull_request.url}")
    print_warnings(result.warnings)


@app.command("check-merged")
def agent_check_merged(
    session: str = typer.Argument(..., help="Session name."),
    pr_number: int = typer.Argument(..., help="Pull request number."),
) -> None:
    """Clean up an agent if its pull request has been merged."""
    from handy_agents.cli.common import get_cli_logger
    from handy_agents.lifecycle import AgentLifecycle

    config = get_config_or_default()
    with cli_errors():
        lifecycle = AgentLifecycle(build_orchestrator(config), logger=get_cli_logger("lifecycle", config))
        result = lifecycle.check_and_cleanup_merged_pr(session, pr_number)

    if result.cleaned_up:
        console.print(f"[green]PR #{pr_number} merged[/green]; {session} cleaned up")
    else:
        console.print(f"PR #{pr_number} is {result.state}; nothing to do")
    print_warnings(result.warnings)


@app.command("detect-pr")
def agent_detect_pr(
    session: str = typer.Argument(..., help="Session name."),
) -> None:
    """Show the pull request opened from the agent's branch, if any."""
    from handy_agents.lifecycle import AgentLifecycle

    config = get_config_or_default()
    with cli_errors():
        pr = AgentLifecycle(build_orchestrator(config)).detect_pr_for_agent(session)

    if pr is None:
        console.print("[dim]No pull request found.[/dim]")
        return
    console.print(f"PR #{pr.number} ({pr.state}) {escape(pr.title)}\n  {pr.url}")


@app.command("output")
def agent_output(
    session: str = typer.Argument(..., help="Session name."),
    lines: Optional[int] = typer.Option(None, "--lines", "-n", help="Lines of scrollback (default: tmux.output_lines)."),
) -> None:
    """Print recent output from an agent session."""
    config = get_config_or_default()
    with cli_errors():
        output = build_orchestrator(config).get_session_output(session, lines)
    console.print(output, markup=False, highlight=False)


@app.command("send")
def agent_send(
    session: str = typer.Argument(..., help="Session name."),
    text: str = typer.Argument(..., help="Text to send."),
    raw: bool = typer.Option(False, "--raw", help="Send as raw keys without pressing Enter."),
) -> None:
    """Send a command (or raw keys) to an agent session."""
    config = get_config_or_default()
    orchestrator = build_orchestrator(config)
    with cli_errors():
        if raw:
            orchestrator.send_keys(session, text)
        else:
            orchestrator.send_command(session, text)
    console.print(f"Sent to {session}")


@app.command("master")
def agent_master() -> None:
    """Create the persistent management session if it does not exist."""
    config = get_config_or_default()
    with cli_errors():
        created = build_orchestrator(config).ensure_master_session()
    name = config.tmux.master_session
    if created:
        console.print(f"[green]Created[/green] {name}")
    else:
        console.print(f"{name} already running")
