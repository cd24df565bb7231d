"""
Pipeline data models.

This module defines the lifecycle record of one issue's journey from
assignment to completion:
- PipelineStatus: overall state machine
- PrPipelineStatus: pull request sub-state
- PipelineItem: the tracked record with its transitions
- PipelineState: active items plus a capped, append-only history

State machine:
QUEUED → IN_PROGRESS → PR_PENDING/PR_REVIEW → COMPLETED
SKIPPED and FAILED are reachable from every non-terminal state.
COMPLETED is only reached through a merged pull request.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from handy_agents.errors import InvalidTransitionError, PipelineItemNotFoundError
from handy_agents.models import utc_now_iso


class PipelineStatus(Enum):
    """Overall status of a pipeline item."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PR_PENDING = "pr_pending"
    PR_REVIEW = "pr_review"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class PrPipelineStatus(Enum):
    """Status of the item's pull request."""

    NONE = "none"
    DRAFT = "draft"
    READY = "ready"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"


TERMINAL_STATUSES = frozenset({
    PipelineStatus.COMPLETED,
    PipelineStatus.SKIPPED,
    PipelineStatus.FAILED,
})

ACTIVE_STATUSES = frozenset({
    PipelineStatus.IN_PROGRESS,
    PipelineStatus.PR_PENDING,
    PipelineStatus.PR_REVIEW,
})

# PR_REVIEW → PR_REVIEW covers re-deriving the PR sub-state
VALID_TRANSITIONS: dict[PipelineStatus, list[PipelineStatus]] = {
    PipelineStatus.QUEUED: [
        PipelineStatus.IN_PROGRESS, PipelineStatus.SKIPPED, PipelineStatus.FAILED,
    ],
    PipelineStatus.IN_PROGRESS: [
        PipelineStatus.PR_PENDING, PipelineStatus.PR_REVIEW, PipelineStatus.COMPLETED,
        PipelineStatus.SKIPPED, PipelineStatus.FAILED,
    ],
    PipelineStatus.PR_PENDING: [
        PipelineStatus.PR_REVIEW, PipelineStatus.COMPLETED,
        PipelineStatus.SKIPPED, PipelineStatus.FAILED,
    ],
    PipelineStatus.PR_REVIEW: [
        PipelineStatus.PR_REVIEW, PipelineStatus.COMPLETED,
        PipelineStatus.SKIPPED, PipelineStatus.FAILED,
    ],
    PipelineStatus.COMPLETED: [],
    PipelineStatus.SKIPPED: [],
    PipelineStatus.FAILED: [],
}


def is_valid_transition(from_status: PipelineStatus, to_status: PipelineStatus) -> bool:
    """Check if a status transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def make_item_id(work_repo: str, issue_number: int, timestamp: Optional[int] = None) -> str:
    """Item id: {owner-repo}-{issue}-{unix seconds}."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"{work_repo.replace('/', '-')}-{issue_number}-{ts}"


@dataclass
class PipelineItem:
    """
    Lifecycle record linking issue → session → worktree → pull request.

    Unknown keys in stored documents are ignored and missing ones take their
    defaults, so older store files keep loading.
    """

    id: str
    tracking_repo: str
    work_repo: str
    issue_number: int
    issue_title: str = ""
    issue_url: str = ""
    agent_type: str = "claude"
    session_name: Optional[str] = None
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None
    machine_id: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    pr_status: PrPipelineStatus = PrPipelineStatus.NONE
    status: PipelineStatus = PipelineStatus.QUEUED
    created_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_issue(
        cls,
        issue_number: int,
        title: str,
        tracking_repo: str,
        work_repo: str,
        agent_type: str,
        url: str = "",
    ) -> PipelineItem:
        """New QUEUED item for an issue."""
        return cls(
            id=make_item_id(work_repo, issue_number),
            tracking_repo=tracking_repo,
            work_repo=work_repo,
            issue_number=issue_number,
            issue_title=title,
            issue_url=url,
            agent_type=agent_type,
        )

    # =========================================================================
    # Predicates
    # =========================================================================

    @property
    def is_active(self) -> bool:
        """True while an agent or PR is in flight."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_complete(self) -> bool:
        """True once the item reached a terminal state."""
        return self.status in TERMINAL_STATUSES

    def matches_repo(self, repo: str) -> bool:
        return repo in (self.tracking_repo, self.work_repo)

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, new_status: PipelineStatus) -> None:
        if not is_valid_transition(self.status, new_status):
            raise InvalidTransitionError(
                f"Invalid transition for {self.id}: {self.status.value} -> {new_status.value}. "
                f"Valid transitions: {[s.value for s in VALID_TRANSITIONS.get(self.status, [])]}"
            )
        self.status = new_status

    def start_work(
        self,
        session_name: str,
        worktree_path: str,
        branch_name: str,
        machine_id: str,
    ) -> None:
        """QUEUED → IN_PROGRESS, recording where the agent runs."""
        self._transition(PipelineStatus.IN_PROGRESS)
        self.session_name = session_name
        self.worktree_path = worktree_path
        self.branch_name = branch_name
        self.machine_id = machine_id
        self.started_at = utc_now_iso()

    def mark_pr_pending(self) -> None:
        """IN_PROGRESS → PR_PENDING: agent finished, PR not linked yet."""
        self._transition(PipelineStatus.PR_PENDING)

    def link_pr(self, number: int, url: str, state: str, is_draft: bool = False) -> None:
        """
        Attach a pull request.

        A merged PR completes the item directly; anything else moves it to
        PR_REVIEW.
        """
        state = (state or "").lower()
        if state == "merged":
            pr_status = PrPipelineStatus.MERGED
        elif state == "closed":
            pr_status = PrPipelineStatus.CLOSED
        elif is_draft:
            pr_status = PrPipelineStatus.DRAFT
        else:
            pr_status = PrPipelineStatus.READY

        if pr_status is PrPipelineStatus.MERGED:
            self._transition(PipelineStatus.COMPLETED)
            self.completed_at = utc_now_iso()
        else:
            self._transition(PipelineStatus.PR_REVIEW)

        self.pr_number = number
        self.pr_url = url
        self.pr_status = pr_status

    def update_pr_status(
        self,
        state: str,
        is_draft: bool = False,
        has_reviewers: bool = False,
        is_approved: bool = False,
    ) -> None:
        """
        Re-derive the PR sub-state from remote state and review tallies.

        merged → COMPLETED, closed without merge → FAILED, otherwise
        approved/needs_review/draft/ready under PR_REVIEW.
        """
        state = (state or "").lower()
        if state == "merged":
            pr_status = PrPipelineStatus.MERGED
        elif state == "closed":
            pr_status = PrPipelineStatus.CLOSED
        elif is_approved:
            pr_status = PrPipelineStatus.APPROVED
        elif has_reviewers:
            pr_status = PrPipelineStatus.NEEDS_REVIEW
        elif is_draft:
            pr_status = PrPipelineStatus.DRAFT
        else:
            pr_status = PrPipelineStatus.READY

        if pr_status is PrPipelineStatus.MERGED:
            self._transition(PipelineStatus.COMPLETED)
            self.completed_at = utc_now_iso()
        elif pr_status is PrPipelineStatus.CLOSED:
            self._transition(PipelineStatus.FAILED)
            self.completed_at = utc_now_iso()
            self.error = self.error or "Pull request closed without merging"
        else:
            self._transition(PipelineStatus.PR_REVIEW)
        self.pr_status = pr_status

    def skip(self, reason: Optional[str] = None) -> None:
        """Any non-terminal state → SKIPPED."""
        self._transition(PipelineStatus.SKIPPED)
        self.completed_at = utc_now_iso()
        if reason:
            self.error = reason

    def fail(self, error: str) -> None:
        """Any non-terminal state → FAILED."""
        self._transition(PipelineStatus.FAILED)
        self.error = error
        self.completed_at = utc_now_iso()

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        data["pr_status"] = self.pr_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineItem:
        """Create from dictionary."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["status"] = PipelineStatus(known.get("status", PipelineStatus.QUEUED.value))
        known["pr_status"] = PrPipelineStatus(known.get("pr_status", PrPipelineStatus.NONE.value))
        return cls(**known)


@dataclass
class PipelineSummary:
    """Counts by status. PR_PENDING and PR_REVIEW are counted together."""
    total: int = 0
    queued: int = 0
    in_progress: int = 0
    pr_pending: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class PipelineState:
    """Active items keyed by id, plus history (oldest first)."""

    items: dict[str, PipelineItem] = field(default_factory=dict)
    history: list[PipelineItem] = field(default_factory=list)
    max_history: int = 100

    def add_item(self, item: PipelineItem) -> None:
        self.items[item.id] = item

    def get_item(self, item_id: str) -> Optional[PipelineItem]:
        return self.items.get(item_id)

    def require_item(self, item_id: str) -> PipelineItem:
        """
        Get an item or raise.

        Raises:
            PipelineItemNotFoundError: If no active item has this id.
        """
        item = self.items.get(item_id)
        if item is None:
            raise PipelineItemNotFoundError(item_id)
        return item

    def find_by_issue(self, repo: str, issue_number: int) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.issue_number == issue_number and item.matches_repo(repo):
                return item
        return None

    def find_by_session(self, session_name: str) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.session_name == session_name:
                return item
        return None

    def find_by_pr(self, repo: str, pr_number: int) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.work_repo == repo and item.pr_number == pr_number:
                return item
        return None

    def find_by_branch(self, branch_name: str) -> Optional[PipelineItem]:
        for item in self.items.values():
            if item.branch_name == branch_name:
                return item
        return None

    def add_history(self, item: PipelineItem) -> None:
        """Append to history, dropping the oldest entries past max_history."""
        self.history.append(item)
        overflow = len(self.history) - self.max_history
        if overflow > 0:
            del self.history[:overflow]

    def archive_item(self, item_id: str) -> Optional[PipelineItem]:
        """
        Remove an item from the active set.

        The item goes to history only if it is terminal.
        """
        item = self.items.pop(item_id, None)
        if item is not None and item.is_complete:
            self.add_history(item)
        return item

    def archive_completed(self) -> list[PipelineItem]:
        """Archive every terminal item."""
        completed = [item_id for item_id, item in self.items.items() if item.is_complete]
        return [self.archive_item(item_id) for item_id in completed]

    def remove_item(self, item_id: str) -> Optional[PipelineItem]:
        return self.items.pop(item_id, None)

    def get_active_items(self) -> list[PipelineItem]:
        return [item for item in self.items.values() if item.is_active]

    def get_history(self, limit: Optional[int] = None) -> list[PipelineItem]:
        """History, newest first."""
        newest_first = list(reversed(self.history))
        return newest_first if limit is None else newest_first[:limit]

    def summary(self) -> PipelineSummary:
        summary = PipelineSummary(total=len(self.items))
        for item in self.items.values():
            if item.status is PipelineStatus.QUEUED:
                summary.queued += 1
            elif item.status is PipelineStatus.IN_PROGRESS:
                summary.in_progress += 1
            elif item.status in (PipelineStatus.PR_PENDING, PipelineStatus.PR_REVIEW):
                summary.pr_pending += 1
            elif item.status is PipelineStatus.COMPLETED:
                summary.completed += 1
            elif item.status is PipelineStatus.SKIPPED:
                summary.skipped += 1
            elif item.status is PipelineStatus.FAILED:
                summary.failed += 1
        return summary

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "items": {item_id: item.to_dict() for item_id, item in self.items.items()},
            "history": [item.to_dict() for item in self.history],
            "max_history": self.max_history,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineState:
        """Create from dictionary."""
        return cls(
            items={k: PipelineItem.from_dict(v) for k, v in (data.get("items") or {}).items()},
            history=[PipelineItem.from_dict(v) for v in data.get("history") or []],
            max_history=data.get("max_history", 100),
        )
