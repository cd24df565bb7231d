"""
Pipeline state tracker.

This module handles:
- Assigning issues to agents and skipping issues
- Aggregating stored items with live session state
- Detecting and linking pull requests by branch name
- Syncing pull request status and archiving finished items
- Summary, history and lookup queries

Network and subprocess calls run outside the store lock; only the
mutation of the loaded state happens inside a transaction.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from handy_agents.allocation import branch_name_for_issue
from handy_agents.errors import HandyError, InvalidTransitionError, PreconditionError
from handy_agents.orchestrator import AgentOrchestrator, SpawnOptions, SpawnResult
from handy_agents.pipeline.models import (
    PipelineItem,
    PipelineState,
    PipelineStatus,
    PipelineSummary,
)
from handy_agents.pipeline.store import PipelineStore

if TYPE_CHECKING:
    from handy_agents.config import HandyConfig
    from handy_agents.logger import HandyLogger
    from handy_agents.orchestrator import AgentStatus
    from handy_agents.providers.github import GitHubProvider, GitHubPullRequest, PullRequestStatus


# =============================================================================
# Pure reconciliation helpers
# =============================================================================


def aggregate_pipeline_state(
    state: PipelineState,
    sessions: Iterable[AgentStatus],
    work_repo: str = "",
) -> list[PipelineItem]:
    """
    Merge live sessions into stored items, matching on (repo, issue number).

    Matched items get their session, worktree and machine refreshed. A
    QUEUED item with a live session is promoted to IN_PROGRESS; items
    further along keep their status.

    Returns:
        Every active item after the merge.
    """
    for session in sessions:
        if session.issue_number is None:
            continue
        repo = session.repo or work_repo
        item = state.find_by_issue(repo, session.issue_number)
        if item is None or item.is_complete:
            continue

        if item.status is PipelineStatus.QUEUED:
            item.start_work(
                session_name=session.session,
                worktree_path=session.worktree or "",
                branch_name=branch_name_for_issue(item.issue_number),
                machine_id=session.machine_id or "",
            )
        item.session_name = session.session
        item.worktree_path = session.worktree
        item.machine_id = session.machine_id

    return list(state.items.values())


def detect_pr_for_item(
    item: PipelineItem,
    prs: Iterable[GitHubPullRequest],
) -> Optional[GitHubPullRequest]:
    """Pull request whose head branch equals the item's branch."""
    if not item.branch_name:
        return None
    for pr in prs:
        if pr.head_branch == item.branch_name:
            return pr
    return None


def apply_pr_status(item: PipelineItem, status: PullRequestStatus) -> None:
    """Feed a fetched PR status into the item's state machine."""
    item.update_pr_status(
        state=status.pr.state,
        is_draft=status.pr.is_draft,
        has_reviewers=status.reviews.has_reviewers,
        is_approved=status.reviews.is_approved,
    )


def sync_pr_status(
    item: PipelineItem,
    github: GitHubProvider,
    fetched: Optional[PullRequestStatus] = None,
) -> bool:
    """
    Bring the item in line with its PR.

    Args:
        item: Item to update in place.
        github: Used to fetch the PR when ``fetched`` is not given.
        fetched: Status already retrieved for the item's PR, so callers can
            do the network call outside the store lock.

    Returns:
        False if the item has no PR or ``fetched`` belongs to another PR.
    """
    if item.pr_number is None:
        return False
    if fetched is None:
        fetched = github.get_pr_status(item.work_repo, item.pr_number)
    elif fetched.pr.number != item.pr_number:
        return False
    apply_pr_status(item, fetched)
    return True


# =============================================================================
# Tracker
# =============================================================================


@dataclass
class AssignResult:
    """Outcome of assigning an issue to an agent."""
    item: PipelineItem
    spawn: SpawnResult


class PipelineTracker:
    """Pipeline operations over the persisted store."""

    def __init__(
        self,
        config: HandyConfig,
        orchestrator: Optional[AgentOrchestrator] = None,
        store: Optional[PipelineStore] = None,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            config: HandyConfig with repos, labels and store settings.
            orchestrator: Used for spawning and live session state.
            store: Pipeline store (defaults to the configured path).
            logger: Optional logger for recording operations.
        """
        self.config = config
        self._logger = logger
        self.orchestrator = orchestrator or AgentOrchestrator(config, logger=logger)
        self.github = self.orchestrator.github
        self.store = store or PipelineStore(
            config.pipeline_store_path,
            max_history=config.pipeline.max_history,
            lock_timeout=config.pipeline.lock_timeout_seconds,
            logger=logger,
        )

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "pipeline"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _repos(self, tracking_repo: Optional[str], work_repo: Optional[str]) -> tuple[str, str]:
        tracking = tracking_repo or self.config.github.repo
        if not tracking:
            raise PreconditionError("No tracking repository given and github.repo is not configured")
        work = work_repo or self.config.github.work_repo or tracking
        return tracking, work

    # =========================================================================
    # Assignment
    # =========================================================================

    def assign_issue_to_agent(
        self,
        issue_number: int,
        tracking_repo: Optional[str] = None,
        work_repo: Optional[str] = None,
        agent_type: Optional[str] = None,
        sandbox: Optional[bool] = None,
        working_labels: Optional[list[str]] = None,
    ) -> AssignResult:
        """
        Spawn an agent for an issue and record it as IN_PROGRESS.

        Raises:
            PreconditionError: If no tracking repo is known, the issue does not
                exist, or the agent's resources already exist.
            ToolError: If spawning fails.
        """
        tracking, work = self._repos(tracking_repo, work_repo)
        agent = agent_type or self.config.agents.default_type

        issue = self.github.get_issue(tracking, issue_number)
        spawn = self.orchestrator.spawn(
            f"{tracking}#{issue_number}",
            SpawnOptions(agent_type=agent, sandbox=sandbox, working_labels=working_labels),
        )

        item = PipelineItem.from_issue(issue_number, issue.title, tracking, work, spawn.agent_type, issue.url)
        item.start_work(spawn.session, spawn.worktree.path, spawn.worktree.branch, spawn.machine_id)

        if self.config.github.todo_labels:
            try:
                self.github.update_labels(tracking, issue_number, remove=self.config.github.todo_labels)
            except HandyError as e:
                spawn.warnings.append(f"Failed to remove todo labels: {e}")

        with self.store.transaction() as state:
            state.add_item(item)

        self._log("issue_assigned", {"item_id": item.id, "issue": issue_number, "session": spawn.session})
        return AssignResult(item=item, spawn=spawn)

    def skip_issue(self, repo: str, issue_number: int, reason: Optional[str] = None) -> PipelineItem:
        """
        Skip an issue: relabel it, explain why, and record it in history.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            GitHubError: If the labels cannot be updated.
        """
        issue = self.github.get_issue(repo, issue_number)
        item = PipelineItem.from_issue(issue_number, issue.title, repo, repo, "none", issue.url)
        item.skip(reason)

        self.github.update_labels(
            repo, issue_number,
            add=self.config.github.skip_labels,
            remove=self.config.github.todo_labels,
        )
        if reason:
            comment = "\n".join([
                "🚫 **Issue Skipped**",
                "",
                "This issue was skipped by the automation system.",
                "",
                f"**Reason:** {reason}",
                "",
                f"The issue has been marked with `{', '.join(self.config.github.skip_labels)}`.",
            ])
            try:
                self.github.add_comment(repo, issue_number, comment)
            except HandyError as e:
                self._log("skip_comment_failed", {"issue": issue_number, "error": str(e)}, level="warn")

        with self.store.transaction() as state:
            state.add_history(item)

        self._log("issue_skipped", {"repo": repo, "issue": issue_number, "reason": reason})
        return item

    # =========================================================================
    # Aggregation and queries
    # =========================================================================

    def list_pipeline_items(
        self,
        work_repo: Optional[str] = None,
        active_only: bool = False,
    ) -> list[PipelineItem]:
        """
        Stored items merged with live session state.

        A session provider failure degrades to the stored items alone.

        Args:
            work_repo: Repository for sessions that carry no repo of their own.
            active_only: Only items with an agent or PR in flight, judged
                after live sessions have been merged in.
        """
        try:
            sessions = self.orchestrator.list_agent_statuses()
        except HandyError as e:
            self._log("session_listing_failed", {"error": str(e)}, level="warn")
            sessions = []

        with self.store.transaction() as state:
            items = aggregate_pipeline_state(
                state, sessions, work_repo or self.config.github.effective_work_repo
            )
            if active_only:
                items = state.get_active_items()
        return sorted(items, key=lambda i: i.created_at)

    def get_pipeline_summary(self) -> PipelineSummary:
        return self.store.read().summary()

    def get_history(self, limit: Optional[int] = None) -> list[PipelineItem]:
        """Archived items, newest first."""
        return self.store.read().get_history(limit)

    def get_item(self, item_id: str) -> Optional[PipelineItem]:
        return self.store.read().get_item(item_id)

    def find_by_issue(self, repo: str, issue_number: int) -> Optional[PipelineItem]:
        return self.store.read().find_by_issue(repo, issue_number)

    def find_by_session(self, session_name: str) -> Optional[PipelineItem]:
        return self.store.read().find_by_session(session_name)

    def find_by_pr(self, repo: str, pr_number: int) -> Optional[PipelineItem]:
        return self.store.read().find_by_pr(repo, pr_number)

    def find_by_branch(self, branch_name: str) -> Optional[PipelineItem]:
        return self.store.read().find_by_branch(branch_name)

    # =========================================================================
    # Pull request linkage
    # =========================================================================

    def detect_and_link_prs(self, work_repo: str) -> list[PipelineItem]:
        """Link open PRs to items that have a branch but no PR yet."""
        prs = self.github.list_prs(work_repo, state="open", limit=100)

        linked = []
        with self.store.transaction() as state:
            for item in state.items.values():
                if item.pr_number is not None or not item.branch_name or item.is_complete:
                    continue
                if not item.matches_repo(work_repo):
                    continue
                pr = detect_pr_for_item(item, prs)
                if pr is None:
                    continue
                try:
                    item.link_pr(pr.number, pr.url, pr.state, pr.is_draft)
                except InvalidTransitionError as e:
                    self._log("pr_link_skipped", {"item_id": item.id, "error": str(e)}, level="warn")
                    continue
                linked.append(item)

        self._log("prs_detected", {"work_repo": work_repo, "linked": len(linked)})
        return linked

    def sync_all_pr_statuses(self) -> list[PipelineItem]:
        """
        Refresh every item that has a PR, then archive finished items.

        Items whose PR cannot be fetched are left unchanged and logged.
        """
        snapshot = self.store.read()
        fetched: dict[str, tuple[int, PullRequestStatus]] = {}
        for item in snapshot.items.values():
            if item.pr_number is None or item.is_complete:
                continue
            try:
                fetched[item.id] = (item.pr_number, self.github.get_pr_status(item.work_repo, item.pr_number))
            except HandyError as e:
                self._log("pr_sync_failed", {"item_id": item.id, "error": str(e)}, level="warn")

        updated = []
        with self.store.transaction() as state:
            for item_id, (pr_number, status) in fetched.items():
                item = state.get_item(item_id)
                if item is None or item.pr_number != pr_number or item.is_complete:
                    continue
                if sync_pr_status(item, self.github, fetched=status):
                    updated.append(item)
            archived = state.archive_completed()

        self._log("pr_statuses_synced", {"updated": len(updated), "archived": len(archived)})
        return updated

    def update_pipeline_item_pr_status(self, item_id: str) -> Optional[PipelineItem]:
        """
        Refresh one item's PR status.

        Returns:
            The updated item, or None if it has no PR or it was
            relinked to another PR while the status was being fetched.

        Raises:
            PipelineItemNotFoundError: If the id is unknown.
        """
        item = self.store.read().require_item(item_id)
        if item.pr_number is None:
            return None
        status = self.github.get_pr_status(item.work_repo, item.pr_number)
        with self.store.transaction() as state:
            current = state.require_item(item_id)
            if not sync_pr_status(current, self.github, fetched=status):
                return None
            return current

    def link_pr_to_pipeline_item(self, item_id: str, pr_number: int) -> PipelineItem:
        """
        Link a specific PR to an item.

        Raises:
            PipelineItemNotFoundError: If the id is unknown.
            IssueNotFoundError: If the PR does not exist.
            InvalidTransitionError: If the item cannot take a PR in its state.
        """
        item = self.store.read().require_item(item_id)
        status = self.github.get_pr_status(item.work_repo, pr_number)
        with self.store.transaction() as state:
            current = state.require_item(item_id)
            current.link_pr(status.pr.number, status.pr.url, status.pr.state, status.pr.is_draft)
            self._log("pr_linked", {"item_id": item_id, "pr_number": pr_number})
            return current

    # =========================================================================
    # Maintenance
    # =========================================================================

    def fail_item(self, item_id: str, error: str) -> PipelineItem:
        with self.store.transaction() as state:
            item = state.require_item(item_id)
            item.fail(error)
            return item

    def archive_item(self, item_id: str) -> Optional[PipelineItem]:
        """Remove an item from the active set; terminal items go to history."""
        with self.store.transaction() as state:
            return state.archive_item(item_id)

    def archive_completed(self) -> list[PipelineItem]:
        with self.store.transaction() as state:
            return state.archive_completed()

    def remove_item(self, item_id: str) -> Optional[PipelineItem]:
        with self.store.transaction() as state:
            return state.remove_item(item_id)

    # =========================================================================
    # Async offload
    # =========================================================================

    async def list_pipeline_items_async(
        self,
        work_repo: Optional[str] = None,
        active_only: bool = False,
    ) -> list[PipelineItem]:
        return await asyncio.to_thread(self.list_pipeline_items, work_repo, active_only)

    async def sync_all_pr_statuses_async(self) -> list[PipelineItem]:
        return await asyncio.to_thread(self.sync_all_pr_statuses)

    async def detect_and_link_prs_async(self, work_repo: str) -> list[PipelineItem]:
        return await asyncio.to_thread(self.detect_and_link_prs, work_repo)
