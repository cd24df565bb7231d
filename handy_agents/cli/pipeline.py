"""Pipeline commands.

Track issues from assignment through pull request to completion.
"""
from __future__ import annotations

from typing import Optional

import typer

from handy_agents.cli.common import (
    build_tracker,
    cli_errors,
    get_config_or_default,
    get_console,
    print_warnings,
    require_repo,
)
from handy_agents.cli.display import format_pipeline_status, pipeline_table

app = typer.Typer(
    name="pipeline",
    help="Track work items from assignment to merged PR",
    no_args_is_help=True,
)

console = get_console()


@app.command("list")
def pipeline_list(
    work_repo: Optional[str] = typer.Option(
        None,
        "--work-repo",
        "-w",
        help="Repository sessions without a recorded repo belong to.",
    ),
    active: bool = typer.Option(False, "--active", help="Only items with an agent or PR in flight."),
) -> None:
    """List tracked items, refreshed from live sessions."""
    config = get_config_or_default()
    with cli_errors():
        items = build_tracker(config).list_pipeline_items(work_repo, active_only=active)

    if not items:
        console.print("[dim]No active pipeline items.[/dim]")
        return
    console.print(pipeline_table(items, "Pipeline"))


@app.command("summary")
def pipeline_summary() -> None:
    """Count active items by status."""
    config = get_config_or_default()
    with cli_errors():
        summary = build_tracker(config).get_pipeline_summary()

    console.print(f"[bold]Pipeline[/bold] ({summary.total} total)")
    console.print(f"  Queued:      {summary.queued}")
    console.print(f"  In progress: {summary.in_progress}")
    console.print(f"  PR pending:  {summary.pr_pending}")
    console.print(f"  Completed:   {summary.completed}")
    console.print(f"  Skipped:     {summary.skipped}")
    console.print(f"  Failed:      {summary.failed}")


@app.command("history")
def pipeline_history(
    limit: Optional[int] = typer.Option(20, "--limit", "-n", help="Most recent entries to show."),
) -> None:
    """Show archived items, newest first."""
    config = get_config_or_default()
    with cli_errors():
        items = build_tracker(config).get_history(limit)

    if not items:
        console.print("[dim]No history.[/dim]")
        return
    console.print(pipeline_table(items, "History"))


@app.command("assign")
def pipeline_assign(
    issue: int = typer.Argument(..., help="Issue number in the tracking repository."),
    tracking_repo: Optional[str] = typer.Option(None, "--tracking-repo", help="Default: github.repo."),
    work_repo: Optional[str] = typer.Option(None, "--work-repo", help="Default: github.work_repo."),
    agent_type: Optional[str] = typer.Option(None, "--agent-type", "-a", help="Default: agents.default_type."),
    sandbox: Optional[bool] = typer.Option(None, "--sandbox/--no-sandbox", help="Default: sandbox.enabled."),
) -> None:
    """Spawn an agent for an issue and start tracking it."""
    config = get_config_or_default()
    with cli_errors():
        result = build_tracker(config).assign_issue_to_agent(
            issue,
            tracking_repo=tracking_repo,
            work_repo=work_repo,
            agent_type=agent_type,
            sandbox=sandbox,
        )

    item = result.item
    console.print(f"[green]Assigned[/green] #{item.issue_number} to {item.agent_type}")
    console.print(f"  Item:    [cyan]{item.id}[/cyan]")
    console.print(f"  Session: {item.session_name}")
    console.print(f"  Branch:  {item.branch_name}")
    print_warnings(result.spawn.warnings)


@app.command("skip")
def pipeline_skip(
    issue: int = typer.Argument(..., help="Issue number."),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Default: github.repo."),
    reason: Optional[str] = typer.Option(None, "--reason", help="Posted as a comment on the issue."),
) -> None:
    """Skip an issue: relabel it and record it in history."""
    config = get_config_or_default()
    resolved = require_repo(repo, config)
    with cli_errors():
        item = build_tracker(config).skip_issue(resolved, issue, reason)
    console.print(f"Skipped #{item.issue_number} ({format_pipeline_status(item.status)})")


@app.command("detect-prs")
def pipeline_detect_prs(
    work_repo: str = typer.Argument(..., help="Repository the pull requests live in."),
) -> None:
    """Link open pull requests to items by branch name."""
    config = get_config_or_default()
    with cli_errors():
        linked = build_tracker(config).detect_and_link_prs(work_repo)

    if not linked:
        console.print("[dim]No new pull requests linked.[/dim]")
        return
    for item in linked:
        console.print(f"[green]Linked[/green] PR #{item.pr_number} → #{item.issue_number} ({item.id})")


@app.command("sync")
def pipeline_sync() -> None:
    """Refresh every linked pull request and archive finished items."""
    config = get_config_or_default()
    with cli_errors():
        updated = build_tracker(config).sync_all_pr_statuses()

    console.print(f"Synced {len(updated)} item(s)")
    for item in updated:
        console.print(f"  #{item.issue_number}: {format_pipeline_status(item.status)}")


@app.command("link")
def pipeline_link(
    item_id: str = typer.Argument(..., help="Pipeline item id."),
    pr_number: int = typer.Argument(..., help="Pull request number in the item's work repository."),
) -> None:
    """Link a pull request to an item by hand."""
    config = get_config_or_default()
    with cli_errors():
        item = build_tracker(config).link_pr_to_pipeline_item(item_id, pr_number)
    console.print(f"[green]Linked[/green] PR #{pr_number} → {item.id} ({format_pipeline_status(item.status)})")


@app.command("archive")
def pipeline_archive(
    item_id: str = typer.Argument(..., help="Pipeline item id."),
) -> None:
    """Remove an item from the active set; finished items go to history."""
    config = get_config_or_default()
    with cli_errors():
        item = build_tracker(config).archive_item(item_id)
    if item is None:
        console.print(f"[red]Error:[/red] Pipeline item not found: {item_id}")
        raise typer.Exit(1)
    console.print(f"Archived {item.id}")


@app.command("remove")
def pipeline_remove(
    item_id: str = typer.Argument(..., help="Pipeline item id."),
) -> None:
    """Delete an item without recording it in history."""
    config = get_config_or_default()
    with cli_errors():
        item = build_tracker(config).remove_item(item_id)
    if item is None:
        console.print(f"[red]Error:[/red] Pipeline item not found: {item_id}")
        raise typer.Exit(1)
    console.print(f"Removed {item.id}")
