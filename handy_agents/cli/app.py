"""Main Typer app definition and routing.

The app, its global options and the sub-app registrations live here.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from handy_agents import __version__
from handy_agents.cli.common import get_console, set_project_dir

app = typer.Typer(
    name="handy-agents",
    help="Run coding agents per GitHub issue in isolated worktrees, sessions and sandboxes",
    add_completion=False,
)

console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"handy-agents version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Handy Agents - orchestration for autonomous coding agents.

    One issue, one worktree, one session, and optionally one container.
    Use --project/-p to operate on a different project directory.
    """
    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Sub-App Registration
# =========================================================================

from handy_agents.cli.agent import app as agent_app  # noqa: E402

app.add_typer(agent_app, name="agent")

from handy_agents.cli.sandbox import app as sandbox_app  # noqa: E402

app.add_typer(sandbox_app, name="sandbox")

from handy_agents.cli.pipeline import app as pipeline_app  # noqa: E402

app.add_typer(pipeline_app, name="pipeline")

from handy_agents.cli.epic import app as epic_app  # noqa: E402

app.add_typer(epic_app, name="epic")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
