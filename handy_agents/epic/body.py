"""
Epic and sub-issue markdown.

This module handles:
- Rendering the epic body and sub-issue bodies
- Parsing phases, work repository and sub-issue markers back out
- Line-oriented patches for the progress line and per-phase status lines

Patches touch only the lines they own so manual edits elsewhere in the
body survive.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from handy_agents.epic.models import (
    EpicConfig,
    Phase,
    PhaseApproach,
    PhaseStatus,
    SubIssueConfig,
)

MAX_TITLE_LENGTH = 100

PHASES_HEADING = "## Phases"
PROGRESS_HEADING = "## Progress"
STATUS_PREFIX = "**Status**:"
APPROACH_PREFIX = "**Approach**:"
WORK_REPO_PREFIX = "**Work Repository**:"

STATUS_TEXT: dict[PhaseStatus, str] = {
    PhaseStatus.NOT_STARTED: "⏸️ Not Started",
    PhaseStatus.IN_PROGRESS: "🔄 In Progress",
    PhaseStatus.READY: "👀 Ready for Review",
    PhaseStatus.COMPLETED: "✅ Completed",
    PhaseStatus.SKIPPED: "⏭️ Skipped",
}

# Negated keywords ("Not completed", "Incomplete", "not ready yet") mean the
# phase has not moved on.
_NEGATED_STATUS = re.compile(
    r"\b(?:not|no|never)\s+(?:yet\s+)?(?:complete[d]?|done|ready|reviewed|skipped|started|in\s+progress)\b"
    r"|\b(?:incomplete|unfinished|undone)\b",
    re.IGNORECASE,
)

# Checked in order after the negations; first match wins
_STATUS_KEYWORDS: list[tuple[re.Pattern, PhaseStatus]] = [
    (re.compile(r"\b(?:complete[d]?|done|finished)\b|✅", re.IGNORECASE), PhaseStatus.COMPLETED),
    (re.compile(r"\bskip(?:s|ped)?\b|⏭", re.IGNORECASE), PhaseStatus.SKIPPED),
    (re.compile(r"\bready\b|\breview(?:ed|ing)?\b|👀", re.IGNORECASE), PhaseStatus.READY),
    (re.compile(r"\bprogress\b|🔄|\bworking\b", re.IGNORECASE), PhaseStatus.IN_PROGRESS),
]

_PHASE_HEADING = re.compile(r"^###\s+(?:Phase\s+(\d+)\s*:\s*)?(.*)$", re.IGNORECASE)
_EPIC_MARKER = re.compile(r"\*\*Epic\*\*:\s*#(\d+)\b")
_PHASE_MARKER = re.compile(r"\*\*Phase\*\*:\s*(\d+)\b")


# =============================================================================
# Status text
# =============================================================================


def format_status_text(status: PhaseStatus) -> str:
    return STATUS_TEXT[status]


def parse_status_text(text: Optional[str]) -> PhaseStatus:
    """
    Map a free-text status to a PhaseStatus.

    Keyword based and case-insensitive, matching whole words. Negated
    keywords ("Not completed") and anything unrecognized, such as
    "Waiting for Phase 1", are NOT_STARTED.
    """
    text = (text or "").strip()
    if _NEGATED_STATUS.search(text):
        return PhaseStatus.NOT_STARTED
    for pattern, status in _STATUS_KEYWORDS:
        if pattern.search(text):
            return status
    return PhaseStatus.NOT_STARTED


# =============================================================================
# Rendering
# =============================================================================


def truncate_title(title: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    """Trim a title to max_length, cutting at the last word boundary."""
    title = title.strip()
    if len(title) <= max_length:
        return title
    limit = max_length - 3
    cut = title[:limit].rfind(" ")
    if cut <= 0:
        cut = limit
    return f"{title[:cut]}..."


def format_epic_body(config: EpicConfig) -> str:
    """Standard epic body with every phase marked Not Started."""
    work_repo = config.effective_work_repo
    metrics = "\n".join(f"- [ ] {m}" for m in config.success_metrics)
    phases = "\n".join(
        f"### Phase {index}: {phase.name}\n"
        f"{phase.description}\n\n"
        f"{APPROACH_PREFIX} {phase.approach}\n"
        f"{STATUS_PREFIX} {format_status_text(PhaseStatus.NOT_STARTED)}\n"
        for index, phase in enumerate(config.phases, start=1)
    )
    work_repo_line = f"\n{WORK_REPO_PREFIX} {work_repo}\n" if work_repo != config.repo else ""

    return (
        f"# {config.title}\n"
        f"\n"
        f"## Goal\n"
        f"{config.goal}\n"
        f"{work_repo_line}"
        f"\n"
        f"## Success Metrics\n"
        f"{metrics}\n"
        f"\n"
        f"{PHASES_HEADING}\n"
        f"\n"
        f"{phases}\n"
        f"{PROGRESS_HEADING}\n"
        f"0/TBD sub-issues completed (0%)\n"
        f"\n"
        f"## Notes\n"
        f"Created via Handy Agents epic workflow\n"
    )


def format_sub_issue_body(
    epic_number: int,
    epic_repo: str,
    work_repo: str,
    config: SubIssueConfig,
) -> str:
    """Sub-issue body carrying the Epic and Phase markers used for detection."""
    criteria = "\n".join(f"- [ ] {c}" for c in config.acceptance_criteria)
    work_repo_line = f"{WORK_REPO_PREFIX} {work_repo}\n" if work_repo != epic_repo else ""

    return (
        f"# {config.title}\n"
        f"\n"
        f"**Epic**: #{epic_number}\n"
        f"**Phase**: {config.phase}\n"
        f"**Estimated Time**: {config.estimated_time}\n"
        f"**Dependencies**: {config.dependencies}\n"
        f"{work_repo_line}"
        f"\n"
        f"## Goal\n"
        f"{config.goal}\n"
        f"\n"
        f"## Tasks\n"
        f"{config.tasks}\n"
        f"\n"
        f"## Acceptance Criteria\n"
        f"{criteria}\n"
        f"- [ ] Tests passing locally\n"
        f"- [ ] PR created referencing this issue\n"
        f"\n"
        f"## Agent Assignment\n"
        f"**Agent Type**: {config.agent_type}\n"
    )


def estimate_phase_time(task_count: int) -> str:
    if task_count == 0:
        return "2-4 hours"
    if task_count <= 3:
        return "4-8 hours"
    if task_count <= 6:
        return "1-2 days"
    return "2-3 days"


def agent_type_for_approach(approach: str, default_agent_type: str) -> str:
    """agent-assisted → default agent, automated → "automated", else "manual"."""
    parsed = PhaseApproach.parse(approach)
    if parsed is PhaseApproach.AGENT_ASSISTED:
        return default_agent_type
    if parsed is PhaseApproach.AUTOMATED:
        return "automated"
    return "manual"


def build_phase_sub_issue(phase: Phase, work_repo: str, default_agent_type: str) -> SubIssueConfig:
    """
    One sub-issue covering a whole phase.

    Task breakdown is left to the agent; the phase's tasks and files are
    listed as guidance.
    """
    if phase.tasks:
        tasks_text = "\n".join(f"- {t}" for t in phase.tasks)
        if phase.files:
            files = "\n".join(f"- `{f}`" for f in phase.files)
            tasks_text = f"{tasks_text}\n\n**Relevant files**:\n{files}"
    else:
        tasks_text = phase.description

    criteria = ["All tasks completed", "Tests pass", "Code reviewed"]
    if phase.tasks:
        criteria.insert(0, f"{len(phase.tasks)} tasks completed")

    return SubIssueConfig(
        title=truncate_title(f"Phase {phase.number}: {phase.name}"),
        phase=phase.number,
        goal=phase.description,
        tasks=tasks_text,
        estimated_time=estimate_phase_time(len(phase.tasks)),
        dependencies=", ".join(phase.dependencies) if phase.dependencies else "None",
        acceptance_criteria=criteria,
        agent_type=agent_type_for_approach(phase.approach, default_agent_type),
        work_repo=work_repo,
    )


# =============================================================================
# Parsing
# =============================================================================


def extract_epic_reference(body: Optional[str]) -> Optional[int]:
    """Epic number from a sub-issue's **Epic**: #N line."""
    match = _EPIC_MARKER.search(body or "")
    return int(match.group(1)) if match else None


def extract_phase_number(body: Optional[str]) -> Optional[int]:
    """Phase number from a sub-issue's **Phase**: M line."""
    match = _PHASE_MARKER.search(body or "")
    return int(match.group(1)) if match else None


def references_epic(body: Optional[str], epic_number: int) -> bool:
    return extract_epic_reference(body) == epic_number


def extract_work_repo(body: Optional[str]) -> Optional[str]:
    for line in (body or "").splitlines():
        stripped = line.strip()
        if stripped.startswith(WORK_REPO_PREFIX):
            repo = stripped[len(WORK_REPO_PREFIX):].strip()
            if repo:
                return repo
    return None


@dataclass
class _PhaseBlock:
    number: int
    name: str
    start: int          # Heading line index
    end: int            # One past the last line of the block


def _phase_blocks(lines: list[str]) -> list[_PhaseBlock]:
    """Locate each ### heading inside the ## Phases section."""
    blocks: list[_PhaseBlock] = []
    in_phases = False
    section_end = len(lines)

    for index, line in enumerate(lines):
        stripped = line.strip()
        if stripped == PHASES_HEADING:
            in_phases = True
            continue
        if not in_phases:
            continue
        if stripped.startswith("## "):
            section_end = index
            break
        match = _PHASE_HEADING.match(stripped)
        if match:
            if blocks:
                blocks[-1].end = index
            number = int(match.group(1)) if match.group(1) else len(blocks) + 1
            blocks.append(_PhaseBlock(number=number, name=match.group(2).strip(),
                                      start=index, end=section_end))

    if blocks:
        blocks[-1].end = min(blocks[-1].end, section_end)
    return blocks


def extract_phases(body: Optional[str]) -> list[Phase]:
    """
    Phases from an epic body, with status taken from each **Status** line.

    Description is the phase's free text joined with spaces; metadata lines
    and rules are skipped. A phase without an **Approach** line is manual.
    """
    lines = (body or "").splitlines()
    phases = []
    for block in _phase_blocks(lines):
        phase = Phase(number=block.number, name=block.name)
        description = []
        for line in lines[block.start + 1:block.end]:
            stripped = line.strip()
            if stripped.startswith(APPROACH_PREFIX):
                phase.approach = stripped[len(APPROACH_PREFIX):].strip().lower()
            elif stripped.startswith(STATUS_PREFIX):
                phase.status = parse_status_text(stripped[len(STATUS_PREFIX):])
            elif stripped.startswith("**") or stripped == "---" or not stripped:
                continue
            else:
                description.append(stripped)
        phase.description = " ".join(description).strip()
        phases.append(phase)
    return phases


# =============================================================================
# Patches
# =============================================================================


def update_progress_section(body: str, completed: int, total: int, percentage: int) -> str:
    """Replace the line under ## Progress. Other lines are left untouched."""
    lines = body.split("\n")
    for index, line in enumerate(lines):
        if line.startswith(PROGRESS_HEADING):
            progress = f"{completed}/{total} sub-issues completed ({percentage}%)"
            if index + 1 < len(lines):
                lines[index + 1] = progress
            else:
                lines.append(progress)
            break
    return "\n".join(lines)


def update_phase_status(body: str, phase_number: int, status: PhaseStatus) -> str:
    """
    Rewrite one phase's **Status** line.

    If the phase has no status line, one is inserted after its **Approach**
    line (or its heading). Returns the body unchanged if the phase is absent.
    """
    lines = body.split("\n")
    block = next((b for b in _phase_blocks(lines) if b.number == phase_number), None)
    if block is None:
        return body

    new_line = f"{STATUS_PREFIX} {format_status_text(status)}"
    insert_at = block.start + 1
    for index in range(block.start + 1, block.end):
        stripped = lines[index].strip()
        if stripped.startswith(STATUS_PREFIX):
            indent = lines[index][:len(lines[index]) - len(lines[index].lstrip())]
            lines[index] = indent + new_line
            return "\n".join(lines)
        if stripped.startswith(APPROACH_PREFIX):
            insert_at = index + 1

    lines.insert(insert_at, new_line)
    return "\n".join(lines)
