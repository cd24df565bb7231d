"""Display helpers for the CLI.

Rich labels and colors for pipeline statuses, phase statuses and recovery
actions, plus the table builders shared by several commands.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from rich.markup import escape
from rich.table import Table

from handy_agents.epic.models import PhaseStatus
from handy_agents.orchestrator import RecoveryAction
from handy_agents.pipeline.models import PipelineStatus, PrPipelineStatus

if TYPE_CHECKING:
    from handy_agents.epic.models import ActiveEpicState, Phase
    from handy_agents.pipeline.models import PipelineItem

PIPELINE_STATUS_DISPLAY: dict[PipelineStatus, tuple[str, str]] = {
    PipelineStatus.QUEUED: ("Queued", "dim"),
    PipelineStatus.IN_PROGRESS: ("In Progress", "cyan"),
    PipelineStatus.PR_PENDING: ("PR Pending", "yellow"),
    PipelineStatus.PR_REVIEW: ("PR Review", "blue"),
    PipelineStatus.COMPLETED: ("Completed", "green"),
    PipelineStatus.SKIPPED: ("Skipped", "magenta"),
    PipelineStatus.FAILED: ("Failed", "red"),
}

PR_STATUS_DISPLAY: dict[PrPipelineStatus, str] = {
    PrPipelineStatus.NONE: "-",
    PrPipelineStatus.DRAFT: "draft",
    PrPipelineStatus.READY: "ready",
    PrPipelineStatus.NEEDS_REVIEW: "needs review",
    PrPipelineStatus.APPROVED: "approved",
    PrPipelineStatus.MERGED: "merged",
    PrPipelineStatus.CLOSED: "closed",
}

PHASE_STATUS_DISPLAY: dict[PhaseStatus, tuple[str, str]] = {
    PhaseStatus.NOT_STARTED: ("Not Started", "dim"),
    PhaseStatus.IN_PROGRESS: ("In Progress", "cyan"),
    PhaseStatus.READY: ("Ready for Review", "blue"),
    PhaseStatus.COMPLETED: ("Completed", "green"),
    PhaseStatus.SKIPPED: ("Skipped", "magenta"),
}

RECOVERY_ACTION_DISPLAY: dict[RecoveryAction, tuple[str, str]] = {
    RecoveryAction.RESUME: ("Resume", "green"),
    RecoveryAction.RESTART: ("Restart", "yellow"),
    RecoveryAction.CLEANUP: ("Cleanup", "red"),
    RecoveryAction.INSPECT: ("Inspect", "magenta"),
    RecoveryAction.NONE: ("None", "dim"),
}


def _styled(display: tuple[str, str]) -> str:
    text, style = display
    return f"[{style}]{text}[/{style}]"


def format_pipeline_status(status: PipelineStatus) -> str:
    return _styled(PIPELINE_STATUS_DISPLAY[status])


def format_phase_status(status: PhaseStatus) -> str:
    return _styled(PHASE_STATUS_DISPLAY[status])


def format_recovery_action(action: RecoveryAction) -> str:
    return _styled(RECOVERY_ACTION_DISPLAY[action])


def pipeline_table(items: Iterable[PipelineItem], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Issue", justify="right")
    table.add_column("Title")
    table.add_column("Status", no_wrap=True)
    table.add_column("PR", justify="right")
    table.add_column("PR Status")
    table.add_column("Session", style="dim")
    for item in items:
        table.add_row(
            item.id,
            f"#{item.issue_number}",
            escape(item.issue_title),
            format_pipeline_status(item.status),
            f"#{item.pr_number}" if item.pr_number else "-",
            PR_STATUS_DISPLAY[item.pr_status],
            item.session_name or "-",
        )
    return table


def phase_table(phases: Iterable[Phase], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Phase", justify="right")
    table.add_column("Name")
    table.add_column("Approach", style="dim")
    table.add_column("Status", no_wrap=True)
    table.add_column("Done", justify="right")
    table.add_column("Working", justify="right")
    table.add_column("Issues")
    for phase in phases:
        table.add_row(
            str(phase.number),
            escape(phase.name),
            phase.approach,
            format_phase_status(phase.status),
            f"{phase.completed_count}/{phase.total_count}",
            str(phase.in_progress_count),
            ", ".join(f"#{n}" for n in phase.sub_issue_ids) or "-",
        )
    return table


def sub_issue_table(active: ActiveEpicState, title: str) -> Table:
    """Sub-issues of the active epic with their PRs and assigned sessions."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Issue", justify="right")
    table.add_column("Phase", justify="right")
    table.add_column("Title")
    table.add_column("State", no_wrap=True)
    table.add_column("PR", justify="right")
    table.add_column("Agent", style="cyan")
    for sub in active.epic.sub_issues:
        agent = active.agents.get(sub.issue_number)
        if agent:
            session = f"{agent.session_name} ({agent.agent_type})"
        else:
            session = "working" if sub.has_agent_working else "-"
        table.add_row(
            f"#{sub.issue_number}",
            str(sub.phase) if sub.phase is not None else "-",
            escape(sub.title),
            "[green]closed[/green]" if sub.is_closed else "open",
            f"#{sub.pr_number}" if sub.pr_number else "-",
            session,
        )
    return table
