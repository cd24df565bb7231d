"""
Epic orchestration.

This module handles:
- Creating epics and their sub-issues
- Loading an epic from its issue body
- Starting phases: one sub-issue per phase, optionally one agent each
- Recovering full epic state from the issue tracker alone
- Writing derived phase status and progress back to the epic body
- Tracking the active epic and which agent works each of its sub-issues

The epic issue body is the source of truth. The local cache is written
after each load and only read back for display; recovery never consults it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from handy_agents.epic.body import (
    build_phase_sub_issue,
    extract_phase_number,
    extract_phases,
    extract_work_repo,
    format_epic_body,
    format_sub_issue_body,
    references_epic,
    update_phase_status,
    update_progress_section,
)
from handy_agents.epic.models import (
    EPIC_TITLE_PREFIX,
    ActiveEpicState,
    EpicConfig,
    EpicProgress,
    EpicRecoveryInfo,
    EpicState,
    OrchestrationResult,
    Phase,
    PhaseStatus,
    PhaseSyncResult,
    SpawnedAgentInfo,
    SubIssue,
    SubIssueConfig,
    SubIssueInfo,
    epic_key,
)
from handy_agents.epic.status import apply_sub_issues, compute_progress
from handy_agents.epic.store import EpicStore
from handy_agents.errors import HandyError, NotAnEpicError, PreconditionError
from handy_agents.orchestrator import AgentOrchestrator
from handy_agents.pipeline.tracker import PipelineTracker
from handy_agents.providers.github import GitHubProvider
from handy_agents.providers.worktree import WorktreeProvider
from handy_agents.utils.fs import is_git_checkout

if TYPE_CHECKING:
    from handy_agents.config import HandyConfig
    from handy_agents.logger import HandyLogger
    from handy_agents.providers.github import GitHubIssue


@dataclass
class SubIssueBatch:
    """Sub-issues created in one call. Labeling failures land in warnings."""
    created: list[SubIssueInfo] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class EpicService:
    """Epic lifecycle against the issue tracker."""

    def __init__(
        self,
        config: HandyConfig,
        orchestrator: Optional[AgentOrchestrator] = None,
        github: Optional[GitHubProvider] = None,
        store: Optional[EpicStore] = None,
        tracker: Optional[PipelineTracker] = None,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            config: HandyConfig with epic labels and store settings.
            orchestrator: Used when spawning agents for sub-issues.
            github: Issue tracker provider (defaults to the orchestrator's).
            store: Epic cache.
            tracker: Pipeline tracker that records spawned agents.
            logger: Optional logger for recording operations.
        """
        self.config = config
        self.orchestrator = orchestrator
        self.tracker = tracker
        self._logger = logger
        if github is None:
            github = orchestrator.github if orchestrator else GitHubProvider(config.github, logger)
        self.github = github
        self.store = store or EpicStore(
            config.epic_store_path,
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
            log_data = {"component": "epic"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _cache(self, epic: EpicState) -> None:
        self.store.put(epic)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_epic(self, epic_config: EpicConfig) -> EpicState:
        """
        Create the epic issue.

        The title gets the [EPIC] prefix and the epic label is always added.

        Raises:
            GitHubError: If the issue cannot be created or labeled.
        """
        phases = [replace(p, number=i) for i, p in enumerate(epic_config.phases, start=1)]
        epic_config = replace(epic_config, phases=phases)

        labels = list(epic_config.labels)
        if self.config.epic.epic_label not in labels:
            labels.append(self.config.epic.epic_label)

        number = self.github.create_issue(
            epic_config.repo,
            f"{EPIC_TITLE_PREFIX} {epic_config.title}",
            format_epic_body(epic_config),
            labels=labels,
        )
        epic = EpicState(
            epic_number=number,
            tracking_repo=epic_config.repo,
            work_repo=epic_config.effective_work_repo,
            title=epic_config.title,
            url=f"https://github.com/{epic_config.repo}/issues/{number}",
            phases=phases,
        )
        self._cache(epic)
        self._log("epic_created", {"repo": epic.tracking_repo, "epic_number": number,
                                   "phases": len(phases)})
        return epic

    def create_sub_issues(
        self,
        epic_number: int,
        repo: str,
        work_repo: str,
        configs: list[SubIssueConfig],
    ) -> SubIssueBatch:
        """
        Create sub-issues for an epic and label them todo.

        Raises:
            GitHubError: If an issue cannot be created. Issues created before
                the failure are kept.
        """
        batch = SubIssueBatch()
        todo_label = self.config.epic.todo_label
        for sub in configs:
            sub_work_repo = sub.work_repo or work_repo
            body = format_sub_issue_body(epic_number, repo, sub_work_repo, sub)
            number = self.github.create_issue(repo, sub.title, body)

            try:
                self.github.add_labels(repo, number, [todo_label])
            except HandyError as e:
                message = f"Failed to add labels to issue #{number}: {e}"
                batch.warnings.append(message)
                self._log("sub_issue_label_failed", {"issue": number, "warning": message}, level="warn")

            batch.created.append(SubIssueInfo(
                issue_number=number,
                title=sub.title,
                phase=sub.phase,
                agent_type=sub.agent_type,
                work_repo=sub_work_repo,
                url=f"https://github.com/{repo}/issues/{number}",
            ))

        self._log("sub_issues_created", {"epic_number": epic_number, "count": len(batch.created)})
        return batch

    # =========================================================================
    # Loading
    # =========================================================================

    def _epic_from_issue(self, repo: str, issue: GitHubIssue) -> EpicState:
        is_epic = issue.title.startswith(EPIC_TITLE_PREFIX) or issue.has_label(self.config.epic.epic_label)
        if not is_epic:
            raise NotAnEpicError(
                f"Issue #{issue.number} is not an epic "
                f"(missing {EPIC_TITLE_PREFIX} prefix or '{self.config.epic.epic_label}' label)"
            )
        title = issue.title
        if title.startswith(EPIC_TITLE_PREFIX):
            title = title[len(EPIC_TITLE_PREFIX):]
        return EpicState(
            epic_number=issue.number,
            tracking_repo=repo,
            work_repo=extract_work_repo(issue.body) or repo,
            title=title.strip(),
            url=issue.url,
            phases=extract_phases(issue.body),
        )

    def load_epic(self, repo: str, epic_number: int) -> EpicState:
        """
        Load an epic and its phases from the issue body.

        Phase status here is the text status from the body only.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            NotAnEpicError: If it has neither the [EPIC] prefix nor the epic label.
        """
        epic = self._epic_from_issue(repo, self.github.get_issue(repo, epic_number))
        self._cache(epic)
        return epic

    def find_sub_issues(
        self,
        repo: str,
        epic_number: int,
        work_repo: Optional[str] = None,
        lookup_prs: bool = False,
    ) -> list[SubIssue]:
        """
        Every issue, open or closed, whose body references the epic.

        With lookup_prs, open sub-issues are checked for a pull request in the
        work repository. A failed lookup leaves the sub-issue without a PR.
        """
        working_label = self.config.epic.working_label
        found = []
        for issue in self.github.list_all_issues(repo):
            if issue.number == epic_number or not references_epic(issue.body, epic_number):
                continue
            sub = SubIssue(
                issue_number=issue.number,
                title=issue.title,
                phase=extract_phase_number(issue.body),
                state=issue.state,
                labels=list(issue.labels),
                url=issue.url,
                has_agent_working=issue.has_label(working_label),
            )
            if lookup_prs and sub.is_open:
                self._lookup_pr(sub, work_repo or repo)
            found.append(sub)
        return sorted(found, key=lambda s: s.issue_number)

    def _lookup_pr(self, sub: SubIssue, work_repo: str) -> None:
        try:
            prs = self.github.find_prs_for_issue(work_repo, sub.issue_number)
        except HandyError as e:
            self._log("pr_lookup_failed", {"issue": sub.issue_number, "error": str(e)}, level="warn")
            return
        for pr in prs:
            if pr.state != "closed":
                sub.pr_number = pr.number
                sub.pr_url = pr.url
                return

    def update_epic_progress(self, repo: str, epic_number: int) -> EpicProgress:
        """Recount sub-issues and patch the progress line of the epic body."""
        issue = self.github.get_issue(repo, epic_number)
        progress = compute_progress(self.find_sub_issues(repo, epic_number))
        body = update_progress_section(issue.body, progress.completed, progress.total, progress.percentage)
        if body != issue.body:
            self.github.update_issue_body(repo, epic_number, body)
        self._log("epic_progress_updated", {"epic_number": epic_number, **progress.to_dict()})
        return progress

    def load_epic_for_recovery(self, repo: str, epic_number: int) -> EpicRecoveryInfo:
        """
        Rebuild an epic's full state from the issue tracker.

        Uses only the epic body, the issues referencing it and their pull
        requests. Neither the cache nor live sessions are consulted.
        """
        issue = self.github.get_issue(repo, epic_number)
        epic = self._epic_from_issue(repo, issue)
        subs = self.find_sub_issues(repo, epic_number, epic.work_repo, lookup_prs=True)
        apply_sub_issues(epic.phases, subs, self.config.epic.working_label)
        epic.sub_issues = subs

        phases_with_issues = {s.phase for s in subs if s.phase is not None}
        todo_label = self.config.epic.todo_label
        info = EpicRecoveryInfo(
            epic=epic,
            epic_body=issue.body,
            sub_issues=subs,
            progress=compute_progress(subs),
            phases_without_issues=[p.number for p in epic.phases if p.number not in phases_with_issues],
            ready_for_agents=[s for s in subs if s.is_open and todo_label in s.labels and not s.has_agent_working],
            in_progress=[s for s in subs if s.has_agent_working],
        )
        self._cache(epic)
        self._log("epic_recovered", {
            "epic_number": epic_number,
            "sub_issues": len(subs),
            "ready": len(info.ready_for_agents),
            "in_progress": len(info.in_progress),
        })
        return info

    def get_epic_phase_status(self, epic: EpicState, lookup_prs: bool = True) -> list[Phase]:
        """Per-phase counts and resolved status. The epic itself is not modified."""
        phases = [Phase.from_dict(p.to_dict()) for p in epic.phases]
        subs = self.find_sub_issues(epic.tracking_repo, epic.epic_number, epic.work_repo, lookup_prs)
        return apply_sub_issues(phases, subs, self.config.epic.working_label)

    # =========================================================================
    # Status propagation
    # =========================================================================

    def update_epic_phase_status_on_github(self, repo: str, epic_number: int) -> PhaseSyncResult:
        """
        Write derived phase statuses and progress into the epic body.

        Only the **Status** line of phases whose status changed and the
        progress line are rewritten. Phases without sub-issues keep their
        text status.
        """
        info = self.load_epic_for_recovery(repo, epic_number)
        body = info.epic_body
        text_status = {p.number: p.status for p in extract_phases(body)}

        result = PhaseSyncResult(epic_number=epic_number, phases=info.epic.phases, progress=info.progress)
        for phase in info.epic.phases:
            if phase.total_count and text_status.get(phase.number) != phase.status:
                body = update_phase_status(body, phase.number, phase.status)
                result.changed_phases.append(phase.number)

        body = update_progress_section(body, info.progress.completed, info.progress.total,
                                       info.progress.percentage)
        if body != info.epic_body:
            self.github.update_issue_body(repo, epic_number, body)
            result.body_updated = True

        self._log("epic_phase_status_synced", {"epic_number": epic_number,
                                               "changed_phases": result.changed_phases})
        return result

    def mark_phase_status(
        self,
        repo: str,
        epic_number: int,
        phase_number: int,
        status: PhaseStatus,
    ) -> EpicState:
        """
        Set one phase's **Status** line by hand.

        Raises:
            NotAnEpicError: If the issue is not an epic.
            PreconditionError: If the phase does not exist.
        """
        issue = self.github.get_issue(repo, epic_number)
        epic = self._epic_from_issue(repo, issue)
        phase = epic.get_phase(phase_number)
        if phase is None:
            raise PreconditionError(
                f"Phase {phase_number} does not exist (epic has {len(epic.phases)} phases)"
            )

        body = update_phase_status(issue.body, phase_number, status)
        if body != issue.body:
            self.github.update_issue_body(repo, epic_number, body)
        phase.status = status
        self._cache(epic)
        self._log("phase_status_marked", {"epic_number": epic_number, "phase": phase_number,
                                          "status": status.value})
        return epic

    # =========================================================================
    # Active epic
    # =========================================================================

    def get_active_epic(self) -> Optional[ActiveEpicState]:
        """The active epic as of its last sync. The tracker is not contacted."""
        return self.store.get_active()

    def set_active_epic(self, repo: str, epic_number: int) -> ActiveEpicState:
        """
        Rebuild an epic from the tracker and make it the active epic.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            NotAnEpicError: If the issue is not an epic.
        """
        return self.set_active_epic_from_recovery(self.load_epic_for_recovery(repo, epic_number))

    def set_active_epic_from_recovery(self, info: EpicRecoveryInfo) -> ActiveEpicState:
        """Make an already recovered epic the active epic."""
        active = ActiveEpicState.from_recovery(info)
        replaced = self.store.set_active(active)
        self._log("active_epic_set", {
            "epic": active.key,
            "replaced": replaced.key if replaced else None,
            "agents": len(active.agents),
        })
        return active

    def clear_active_epic(self, archive: bool = False) -> Optional[ActiveEpicState]:
        """
        Deactivate the active epic.

        Args:
            archive: Keep it in the store's history of finished epics.

        Returns:
            The epic that was active, or None if none was.
        """
        cleared = self.store.clear_active(archive=archive)
        if cleared:
            self._log("active_epic_cleared", {"epic": cleared.key, "archived": archive})
        return cleared

    def sync_active_epic(self) -> Optional[ActiveEpicState]:
        """
        Refresh the active epic from the tracker.

        Agent assignments are kept, except for sub-issues that have since
        been closed.

        Returns:
            The refreshed state, or None if no epic is active (or it was
            deactivated while the tracker was being read).
        """
        current = self.store.get_active()
        if current is None:
            return None

        info = self.load_epic_for_recovery(current.epic.tracking_repo, current.epic.epic_number)
        closed = {s.issue_number for s in info.sub_issues if s.is_closed}

        def refresh(active: ActiveEpicState) -> None:
            if active.key != current.key:
                return
            active.refresh(info)
            for number in closed & set(active.agents):
                del active.agents[number]

        synced = self.store.update_active(refresh)
        if synced is None or synced.key != current.key:
            return None
        self._log("active_epic_synced", {"epic": synced.key, **synced.progress.to_dict(),
                                         "agents": len(synced.agents)})
        return synced

    def update_epic_sub_issue_agent(
        self,
        issue_number: int,
        session_name: Optional[str],
        agent_type: Optional[str] = None,
    ) -> ActiveEpicState:
        """
        Record (or with session_name None, clear) the agent working a sub-issue
        of the active epic.

        Raises:
            PreconditionError: If no epic is active, or the issue is not one
                of its sub-issues.
        """
        def assign(active: ActiveEpicState) -> None:
            if not session_name:
                active.agents.pop(issue_number, None)
                return
            if issue_number not in {s.issue_number for s in active.epic.sub_issues}:
                raise PreconditionError(
                    f"Issue #{issue_number} is not a sub-issue of active epic {active.key} "
                    "(sync the active epic if it was created since the last sync)"
                )
            active.assign_agent(issue_number, session_name, agent_type or "unknown")

        active = self.store.update_active(assign)
        if active is None:
            raise PreconditionError("No active epic")
        self._log("sub_issue_agent_updated", {"epic": active.key, "issue": issue_number,
                                              "session": session_name})
        return active

    def get_cached_epic(self, repo: str, epic_number: int) -> Optional[EpicState]:
        """The epic as last loaded, or None if it was never loaded here."""
        return self.store.get(repo, epic_number)

    def forget_epic(self, repo: str, epic_number: int) -> Optional[EpicState]:
        """
        Drop an epic from the local cache. The issue itself is untouched.

        Raises:
            PreconditionError: If it is the active epic.
        """
        active = self.store.get_active()
        if active and active.key == epic_key(repo, epic_number):
            raise PreconditionError(f"Epic {active.key} is active; deactivate it first")
        removed = self.store.remove(repo, epic_number)
        if removed:
            self._log("epic_forgotten", {"epic": removed.key})
        return removed

    def list_cached_epics(self) -> list[EpicState]:
        """Epics as last loaded, most recent first, without contacting the tracker."""
        return sorted(self.store.list_epics(), key=lambda e: e.loaded_at, reverse=True)

    def get_epic_history(self, limit: Optional[int] = None) -> list[ActiveEpicState]:
        """Archived active epics, most recent first."""
        return self.store.get_history(limit)

    # =========================================================================
    # Orchestration
    # =========================================================================

    def start_orchestration(
        self,
        epic: EpicState,
        phases: Optional[list[int]] = None,
        auto_spawn_agents: bool = False,
        worktree_base: Optional[str] = None,
        default_agent_type: Optional[str] = None,
    ) -> OrchestrationResult:
        """
        Create one sub-issue per requested phase and optionally spawn agents.

        Phases that already have a sub-issue reuse it, so running this twice
        creates nothing the second time. Manual sub-issues never get an
        agent, and neither do closed ones or ones already being worked.

        Args:
            epic: Loaded epic.
            phases: 1-based phase numbers (default [1]).
            auto_spawn_agents: Spawn an agent per non-manual sub-issue.
            worktree_base: Local checkout agents work from (default repo_root).
            default_agent_type: Agent for agent-assisted phases.

        Raises:
            GitHubError: If existing sub-issues cannot be listed or a new one
                cannot be created.
        """
        result = OrchestrationResult(epic_number=epic.epic_number)
        agent_type = default_agent_type or self.config.agents.default_type
        requested = phases or [1]

        existing: dict[int, SubIssue] = {}
        for sub in self.find_sub_issues(epic.tracking_repo, epic.epic_number):
            if sub.phase is not None:
                existing.setdefault(sub.phase, sub)

        no_spawn: set[int] = set()
        to_create: list[SubIssueConfig] = []
        for number in requested:
            phase = epic.get_phase(number)
            if phase is None:
                result.warnings.append(
                    f"Phase {number} does not exist (epic has {len(epic.phases)} phases)"
                )
                continue

            current = existing.get(number)
            if current is not None:
                result.warnings.append(
                    f"Phase {number} already has issue #{current.issue_number} - skipping creation"
                )
                result.started_phases.append(number)
                result.sub_issues.append(SubIssueInfo(
                    issue_number=current.issue_number,
                    title=current.title,
                    phase=number,
                    agent_type=build_phase_sub_issue(phase, epic.work_repo, agent_type).agent_type,
                    work_repo=epic.work_repo,
                    url=current.url,
                ))
                if current.is_closed or current.has_agent_working:
                    no_spawn.add(current.issue_number)
                continue

            if phase.dependencies:
                result.warnings.append(
                    f"Phase {number} has dependencies: {', '.join(phase.dependencies)}. Proceeding anyway."
                )
            to_create.append(build_phase_sub_issue(phase, epic.work_repo, agent_type))
            result.started_phases.append(number)

        if to_create:
            batch = self.create_sub_issues(epic.epic_number, epic.tracking_repo, epic.work_repo, to_create)
            result.sub_issues.extend(batch.created)
            result.warnings.extend(batch.warnings)

        if auto_spawn_agents:
            self._spawn_for_sub_issues(epic, result, worktree_base, no_spawn)

        for warning in result.warnings:
            self._log("orchestration_warning", {"epic_number": epic.epic_number, "warning": warning},
                      level="warn")
        self._log("orchestration_started", {
            "epic_number": epic.epic_number,
            "phases": result.started_phases,
            "sub_issues": [s.issue_number for s in result.sub_issues],
            "spawned": len(result.spawned_agents),
        })
        return result

    def _spawn_for_sub_issues(
        self,
        epic: EpicState,
        result: OrchestrationResult,
        worktree_base: Optional[str],
        no_spawn: set[int],
    ) -> None:
        base = worktree_base or self.config.repo_root
        if not is_git_checkout(base):
            result.warnings.append(
                f"Cannot spawn agents: worktree_base '{base}' is not a valid git repository. "
                "Provide a local path to a git checkout."
            )
            return

        tracker = self._spawn_tracker(base)
        for sub in result.sub_issues:
            if sub.agent_type == "manual" or sub.issue_number in no_spawn:
                continue
            try:
                assigned = tracker.assign_issue_to_agent(
                    sub.issue_number,
                    tracking_repo=epic.tracking_repo,
                    work_repo=sub.work_repo,
                    agent_type=sub.agent_type,
                    working_labels=[self.config.epic.working_label],
                )
            except HandyError as e:
                result.warnings.append(f"Failed to spawn agent for issue #{sub.issue_number}: {e}")
                continue
            result.warnings.extend(assigned.spawn.warnings)
            result.spawned_agents.append(SpawnedAgentInfo(
                issue_number=sub.issue_number,
                session_name=assigned.spawn.session,
                worktree_path=assigned.spawn.worktree.path,
                agent_type=assigned.spawn.agent_type,
            ))

        if result.spawned_agents:
            self._record_active_agents(epic, result)

    def _record_active_agents(self, epic: EpicState, result: OrchestrationResult) -> None:
        """Note spawned sessions against their sub-issues when this is the active epic."""
        def record(active: ActiveEpicState) -> None:
            if active.key != epic.key:
                return
            for agent in result.spawned_agents:
                active.assign_agent(agent.issue_number, agent.session_name, agent.agent_type)

        try:
            self.store.update_active(record)
        except HandyError as e:
            result.warnings.append(f"Failed to record agents on the active epic: {e}")

    def _spawn_tracker(self, base: str) -> PipelineTracker:
        """Tracker whose orchestrator creates worktrees from base."""
        orchestrator = self.orchestrator or AgentOrchestrator(self.config, github=self.github,
                                                              logger=self._logger)
        if Path(base).absolute() != Path(orchestrator.worktrees.repo_path):
            base_config = replace(self.config, repo_root=str(base))
            orchestrator = AgentOrchestrator(
                base_config,
                tmux=orchestrator.tmux,
                worktrees=WorktreeProvider(base_config, logger=self._logger),
                docker=orchestrator.docker,
                github=orchestrator.github,
                logger=self._logger,
                machine_id=orchestrator.machine_id,
            )
        store = self.tracker.store if self.tracker else None
        return PipelineTracker(self.config, orchestrator=orchestrator, store=store, logger=self._logger)

    # =========================================================================
    # Async offload
    # =========================================================================

    async def load_epic_for_recovery_async(self, repo: str, epic_number: int) -> EpicRecoveryInfo:
        return await asyncio.to_thread(self.load_epic_for_recovery, repo, epic_number)

    async def start_orchestration_async(self, epic: EpicState, **kwargs) -> OrchestrationResult:
        return await asyncio.to_thread(self.start_orchestration, epic, **kwargs)

    async def update_epic_phase_status_on_github_async(self, repo: str, epic_number: int) -> PhaseSyncResult:
        return await asyncio.to_thread(self.update_epic_phase_status_on_github, repo, epic_number)

    async def sync_active_epic_async(self) -> Optional[ActiveEpicState]:
        return await asyncio.to_thread(self.sync_active_epic)
