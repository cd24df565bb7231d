"""
Epic data models.

This module defines the two-level work breakdown:
- PhaseStatus: status of one phase
- Phase: a phase definition plus its derived status and counts
- EpicConfig / SubIssueConfig: inputs for creating issues
- EpicState: the cached view of an epic, rebuildable from the tracker
- SubIssue: an issue that references an epic
- Result types for progress, recovery and orchestration
- ActiveEpicState: the epic being driven, with its sub-issue agents

The epic issue body is the canonical phase record. Nothing in this module
is authoritative on its own.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from handy_agents.models import utc_now_iso

EPIC_TITLE_PREFIX = "[EPIC]"


class PhaseStatus(Enum):
    """Status of a phase."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PhaseApproach(Enum):
    """How a phase is worked."""

    MANUAL = "manual"
    AGENT_ASSISTED = "agent-assisted"
    AUTOMATED = "automated"

    @classmethod
    def parse(cls, value: Optional[str]) -> PhaseApproach:
        """Unknown or empty approaches are treated as manual."""
        normalized = (value or "").strip().lower().replace("_", "-").replace(" ", "-")
        for approach in cls:
            if approach.value == normalized:
                return approach
        return cls.MANUAL


@dataclass
class Phase:
    """
    One phase of an epic.

    name, description, approach, tasks, files and dependencies come from
    the epic body (or creation input). status and the counts are derived.
    """
    number: int
    name: str
    description: str = ""
    approach: str = PhaseApproach.MANUAL.value
    tasks: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    sub_issue_ids: list[int] = field(default_factory=list)
    completed_count: int = 0
    in_progress_count: int = 0
    total_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        return cls(
            number=int(data["number"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            approach=data.get("approach", PhaseApproach.MANUAL.value),
            tasks=list(data.get("tasks") or []),
            files=list(data.get("files") or []),
            dependencies=list(data.get("dependencies") or []),
            status=PhaseStatus(data.get("status", PhaseStatus.NOT_STARTED.value)),
            sub_issue_ids=[int(n) for n in data.get("sub_issue_ids") or []],
            completed_count=int(data.get("completed_count", 0)),
            in_progress_count=int(data.get("in_progress_count", 0)),
            total_count=int(data.get("total_count", 0)),
        )


@dataclass
class EpicConfig:
    """Input for creating an epic issue."""
    title: str                                   # Without the [EPIC] prefix
    repo: str                                    # Tracking repository
    goal: str
    phases: list[Phase] = field(default_factory=list)
    success_metrics: list[str] = field(default_factory=list)
    work_repo: Optional[str] = None              # Defaults to repo
    labels: list[str] = field(default_factory=list)

    @property
    def effective_work_repo(self) -> str:
        return self.work_repo or self.repo


@dataclass
class SubIssueConfig:
    """Input for creating one sub-issue."""
    title: str
    phase: int
    goal: str
    tasks: str
    estimated_time: str = "2-4 hours"
    dependencies: str = "None"
    acceptance_criteria: list[str] = field(default_factory=list)
    agent_type: str = "manual"
    work_repo: Optional[str] = None              # Inherits the epic's work repo


@dataclass
class SubIssueInfo:
    """A sub-issue created (or found) for an epic phase."""
    issue_number: int
    title: str
    phase: int
    agent_type: str
    work_repo: str
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SubIssue:
    """An existing issue that references an epic."""
    issue_number: int
    title: str
    phase: Optional[int]
    state: str                                   # open/closed
    labels: list[str] = field(default_factory=list)
    url: str = ""
    has_agent_working: bool = False
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state.lower() == "open"

    @property
    def is_closed(self) -> bool:
        return self.state.lower() == "closed"

    @property
    def has_pr(self) -> bool:
        return self.pr_number is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubIssue:
        return cls(
            issue_number=int(data["issue_number"]),
            title=data.get("title", ""),
            phase=data.get("phase"),
            state=data.get("state", "open"),
            labels=list(data.get("labels") or []),
            url=data.get("url", ""),
            has_agent_working=bool(data.get("has_agent_working", False)),
            pr_number=data.get("pr_number"),
            pr_url=data.get("pr_url"),
        )


@dataclass
class EpicProgress:
    """Sub-issue completion counts."""
    total: int = 0
    completed: int = 0
    percentage: int = 0
    remaining: int = 0

    @classmethod
    def from_counts(cls, completed: int, total: int) -> EpicProgress:
        percentage = (completed * 100) // total if total > 0 else 0
        return cls(total=total, completed=completed, percentage=percentage,
                   remaining=total - completed)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EpicProgress:
        return cls(
            total=int(data.get("total", 0)),
            completed=int(data.get("completed", 0)),
            percentage=int(data.get("percentage", 0)),
            remaining=int(data.get("remaining", 0)),
        )



@dataclass
class EpicState:
    """
    Cached view of an epic.

    Rebuilt from the issue tracker on every load; the cache only saves a
    round trip for display.
    """
    epic_number: int
    tracking_repo: str
    work_repo: str
    title: str
    url: str = ""
    phases: list[Phase] = field(default_factory=list)
    sub_issues: list[SubIssue] = field(default_factory=list)
    loaded_at: str = field(default_factory=utc_now_iso)

    @property
    def key(self) -> str:
        return epic_key(self.tracking_repo, self.epic_number)

    def get_phase(self, number: int) -> Optional[Phase]:
        for phase in self.phases:
            if phase.number == number:
                return phase
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic_number": self.epic_number,
            "tracking_repo": self.tracking_repo,
            "work_repo": self.work_repo,
            "title": self.title,
            "url": self.url,
            "phases": [p.to_dict() for p in self.phases],
            "sub_issues": [s.to_dict() for s in self.sub_issues],
            "loaded_at": self.loaded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EpicState:
        return cls(
            epic_number=int(data["epic_number"]),
            tracking_repo=data["tracking_repo"],
            work_repo=data.get("work_repo") or data["tracking_repo"],
            title=data.get("title", ""),
            url=data.get("url", ""),
            phases=[Phase.from_dict(p) for p in data.get("phases") or []],
            sub_issues=[SubIssue.from_dict(s) for s in data.get("sub_issues") or []],
            loaded_at=data.get("loaded_at") or utc_now_iso(),
        )


def epic_key(repo: str, number: int) -> str:
    """Cache key for an epic: owner/repo#number."""
    return f"{repo}#{number}"


@dataclass
class EpicRecoveryInfo:
    """Everything needed to continue an epic, rebuilt from the tracker alone."""
    epic: EpicState
    epic_body: str
    sub_issues: list[SubIssue]
    progress: EpicProgress
    phases_without_issues: list[int] = field(default_factory=list)
    ready_for_agents: list[SubIssue] = field(default_factory=list)
    in_progress: list[SubIssue] = field(default_factory=list)


@dataclass
class SpawnedAgentInfo:
    """An agent spawned during orchestration."""
    issue_number: int
    session_name: str
    worktree_path: str
    agent_type: str


@dataclass
class OrchestrationResult:
    """Outcome of start_orchestration. Partial failures land in warnings."""
    epic_number: int
    sub_issues: list[SubIssueInfo] = field(default_factory=list)
    spawned_agents: list[SpawnedAgentInfo] = field(default_factory=list)
    started_phases: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class PhaseSyncResult:
    """Outcome of writing derived phase statuses back to the epic body."""
    epic_number: int
    phases: list[Phase] = field(default_factory=list)
    progress: EpicProgress = field(default_factory=EpicProgress)
    changed_phases: list[int] = field(default_factory=list)
    body_updated: bool = False


# =============================================================================
# Active epic
# =============================================================================


@dataclass
class SubIssueAgent:
    """The agent session assigned to one sub-issue of the active epic."""
    issue_number: int
    session_name: str
    agent_type: str = "unknown"
    assigned_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubIssueAgent:
        return cls(
            issue_number=int(data["issue_number"]),
            session_name=data["session_name"],
            agent_type=data.get("agent_type") or "unknown",
            assigned_at=data.get("assigned_at") or utc_now_iso(),
        )


@dataclass
class ActiveEpicState:
    """
    The epic this machine is currently driving.

    ``epic`` and ``progress`` are the last view recovered from the tracker
    and are replaced on every sync. ``agents`` maps sub-issue numbers to the
    sessions working them; it is local bookkeeping and survives syncs.
    """
    epic: EpicState
    progress: EpicProgress = field(default_factory=EpicProgress)
    agents: dict[int, SubIssueAgent] = field(default_factory=dict)
    activated_at: str = field(default_factory=utc_now_iso)
    synced_at: Optional[str] = None
    archived_at: Optional[str] = None

    @property
    def key(self) -> str:
        return self.epic.key

    @classmethod
    def from_recovery(cls, info: EpicRecoveryInfo) -> ActiveEpicState:
        """Fresh active state from a tracker rebuild, with no agents assigned."""
        return cls(epic=info.epic, progress=info.progress, synced_at=utc_now_iso())

    def refresh(self, info: EpicRecoveryInfo) -> None:
        """Take the epic view and progress from a newer rebuild, keeping agents."""
        self.epic = info.epic
        self.progress = info.progress
        self.synced_at = utc_now_iso()

    def assign_agent(self, issue_number: int, session_name: str, agent_type: str = "unknown") -> SubIssueAgent:
        agent = SubIssueAgent(issue_number=issue_number, session_name=session_name, agent_type=agent_type)
        self.agents[issue_number] = agent
        return agent

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic": self.epic.to_dict(),
            "progress": self.progress.to_dict(),
            # JSON object keys are strings
            "agents": {str(number): agent.to_dict() for number, agent in self.agents.items()},
            "activated_at": self.activated_at,
            "synced_at": self.synced_at,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActiveEpicState:
        agents = {}
        for raw in (data.get("agents") or {}).values():
            agent = SubIssueAgent.from_dict(raw)
            agents[agent.issue_number] = agent
        return cls(
            epic=EpicState.from_dict(data["epic"]),
            progress=EpicProgress.from_dict(data.get("progress") or {}),
            agents=agents,
            activated_at=data.get("activated_at") or utc_now_iso(),
            synced_at=data.get("synced_at"),
            archived_at=data.get("archived_at"),
        )
