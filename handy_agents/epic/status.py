"""
Phase status resolution.

Two tiers: a phase with sub-issues takes its status from them; a phase
without any falls back to the status text parsed from the epic body.
"""

from __future__ import annotations

from typing import Iterable, Optional

from handy_agents.epic.models import EpicProgress, Phase, PhaseStatus, SubIssue


def resolve_from_sub_issues(sub_issues: list[SubIssue]) -> Optional[PhaseStatus]:
    """
    Status from sub-issue evidence, or None when there is none.

    All closed → COMPLETED; every open one has a PR → READY; otherwise
    IN_PROGRESS.
    """
    if not sub_issues:
        return None
    open_issues = [s for s in sub_issues if not s.is_closed]
    if not open_issues:
        return PhaseStatus.COMPLETED
    if all(s.has_pr for s in open_issues):
        return PhaseStatus.READY
    return PhaseStatus.IN_PROGRESS


def resolve_phase_status(text_status: PhaseStatus, sub_issues: list[SubIssue]) -> PhaseStatus:
    structured = resolve_from_sub_issues(sub_issues)
    return structured if structured is not None else text_status


def apply_sub_issues(
    phases: Iterable[Phase],
    sub_issues: list[SubIssue],
    working_label: str = "staging",
) -> list[Phase]:
    """
    Fill counts and resolved status on each phase in place.

    The phase's current status is taken as its text-tier status.
    """
    resolved = []
    for phase in phases:
        mine = [s for s in sub_issues if s.phase == phase.number]
        phase.sub_issue_ids = [s.issue_number for s in mine]
        phase.total_count = len(mine)
        phase.completed_count = sum(1 for s in mine if s.is_closed)
        phase.in_progress_count = sum(
            1 for s in mine
            if s.is_open and (s.has_agent_working or working_label in s.labels)
        )
        phase.status = resolve_phase_status(phase.status, mine)
        resolved.append(phase)
    return resolved


def compute_progress(sub_issues: list[SubIssue]) -> EpicProgress:
    completed = sum(1 for s in sub_issues if s.is_closed)
    return EpicProgress.from_counts(completed, len(sub_issues))
