"""Sandbox container commands.

Inspect, stop and remove agent containers, clean up orphans and show the
port range reserved for an issue.
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
)

app = typer.Typer(
    name="sandbox",
    help="Manage agent sandbox containers",
    no_args_is_help=True,
)

console = get_console()


def _docker(config):
    from handy_agents.providers.docker import DockerProvider

    return DockerProvider(config.sandbox)


@app.command("list")
def sandbox_list() -> None:
    """List sandbox containers."""
    config = get_config_or_default()
    docker = _docker(config)
    with cli_errors():
        if not docker.is_available():
            console.print("[yellow]Docker is not available.[/yellow]")
            return
        containers = docker.list_sandboxes()

    if not containers:
        console.print("[dim]No sandbox containers.[/dim]")
        return

    table = Table(title="Sandboxes", show_header=True, header_style="bold")
    table.add_column("Container", style="cyan", no_wrap=True)
    table.add_column("Issue", justify="right")
    table.add_column("State")
    table.add_column("Status", style="dim")
    for container in containers:
        state_style = "green" if container.running else "yellow"
        table.add_row(
            container.name,
            f"#{container.issue_number}" if container.issue_number is not None else "-",
            f"[{state_style}]{container.state}[/{state_style}]",
            container.status,
        )
    console.print(table)


@app.command("status")
def sandbox_status(
    name: str = typer.Argument(..., help="Container name."),
) -> None:
    """Show one container's state."""
    config = get_config_or_default()
    with cli_errors():
        status = _docker(config).get_status(name)
    if status is None:
        console.print(f"[red]Error:[/red] No such container: {name}")
        raise typer.Exit(1)

    console.print(f"[bold]{name}[/bold]")
    console.print(f"  ID:        {status.container_id}")
    console.print(f"  Running:   {'yes' if status.running else 'no'}")
    console.print(f"  Status:    {status.status}")
    if status.exit_code is not None and not status.running:
        console.print(f"  Exit code: {status.exit_code}")


@app.command("logs")
def sandbox_logs(
    name: str = typer.Argument(..., help="Container name."),
    tail: int = typer.Option(100, "--tail", "-n", help="Lines from the end of the log."),
) -> None:
    """Print the tail of a container's log."""
    config = get_config_or_default()
    with cli_errors():
        output = _docker(config).get_logs(name, tail=tail)
    console.print(output, markup=False, highlight=False)


@app.command("stop")
def sandbox_stop(
    name: str = typer.Argument(..., help="Container name."),
) -> None:
    """Stop a container."""
    config = get_config_or_default()
    with cli_errors():
        _docker(config).stop(name)
    console.print(f"[green]Stopped[/green] {name}")


@app.command("rm")
def sandbox_rm(
    name: str = typer.Argument(..., help="Container name."),
) -> None:
    """Force-remove a container."""
    config = get_config_or_default()
    with cli_errors():
        _docker(config).remove(name, force=True)
    console.print(f"[green]Removed[/green] {name}")


@app.command("cleanup-orphans")
def sandbox_cleanup_orphans() -> None:
    """Remove containers whose issue has no live agent session."""
    config = get_config_or_default()
    with cli_errors():
        result = build_orchestrator(config).cleanup_orphan_sandboxes()

    console.print(f"Found {result.found} orphan(s), removed {result.removed}")
    for name in result.containers:
        console.print(f"  {name}")
    for error in result.errors:
        console.print(f"[red]  {escape(error)}[/red]")
    if result.errors:
        raise typer.Exit(1)


@app.command("ports")
def sandbox_ports(
    issue: int = typer.Argument(..., help="Issue number."),
    container_port: Optional[List[int]] = typer.Option(
        None,
        "--container-port",
        "-c",
        help="Container port to map into the range (can be repeated).",
    ),
) -> None:
    """Show the host port range reserved for an issue."""
    from handy_agents.allocation import allocate_port_range, remap_port_to_range

    config = get_config_or_default()
    sandbox = config.sandbox
    first, last = allocate_port_range(issue, sandbox.port_base, sandbox.port_range_size, sandbox.slots)
    console.print(f"Issue #{issue}: ports {first}-{last}")
    for port in container_port or []:
        host = remap_port_to_range(port, issue, sandbox.port_base, sandbox.port_range_size, sandbox.slots)
        console.print(f"  {host} -> {port}")
