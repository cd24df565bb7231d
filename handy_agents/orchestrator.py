"""
Session & resource orchestration for Handy Agents.

This module handles:
- Spawning an agent for an issue: worktree, session, metadata, optional
  sandbox, audit comment
- Recovery on startup: classifying every managed session as resume,
  restart, cleanup, inspect or none, and optionally acting on it
- Orphan sandbox cleanup
- Tearing down an agent's session and worktree
- Async wrappers that offload the blocking calls to a worker thread

Spawn Steps:
1. Validate the issue ref and agent type (no side effects)
2. Fetch the issue and run collision checks (no side effects)
3. Create the worktree on issue-{n}
4. Create the session and write AgentMetadata into it
5. Start the agent, inside a container when sandboxing is on and available
6. Best-effort audit comment and working labels on the issue

Steps 3-5 are not transactional. Nothing is rolled back on a later
failure: the surviving session/worktree pair is what recovery works from.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from handy_agents.allocation import (
    CollisionKind,
    branch_name_for_issue,
    container_name_for_issue,
    detect_project_ports,
    parse_port_mappings,
    remap_ports,
    session_name_for_issue,
)
from handy_agents.errors import CollisionError, HandyError, PreconditionError
from handy_agents.lifecycle import format_metadata_comment
from handy_agents.models import (
    AgentMetadata,
    AgentType,
    SandboxDescriptor,
    WorktreeDescriptor,
    get_machine_id,
    issue_number_from_ref,
    parse_issue_ref,
    utc_now_iso,
)
from handy_agents.providers.docker import DockerProvider, SandboxRequest, write_env_file
from handy_agents.providers.github import GitHubProvider
from handy_agents.providers.tmux import TmuxProvider
from handy_agents.providers.worktree import WorktreeProvider

if TYPE_CHECKING:
    from handy_agents.config import HandyConfig
    from handy_agents.logger import HandyLogger


# =============================================================================
# Result types
# =============================================================================


@dataclass
class SpawnOptions:
    """Options for spawning one agent."""
    agent_type: Optional[str] = None            # None = configured default
    sandbox: Optional[bool] = None              # None = sandbox.enabled
    ports: list[str] = field(default_factory=list)  # "3000", "8080:80"; empty = detect
    auto_accept: Optional[bool] = None          # None = agents.auto_accept
    base_branch: Optional[str] = None           # None = repository default
    working_labels: Optional[list[str]] = None  # None = github.working_labels
    reuse_branch: bool = False                  # Check out an existing issue branch left without a worktree


@dataclass
class SpawnResult:
    """Outcome of a spawn. warnings lists the non-fatal steps that failed."""
    session: str
    issue_ref: str
    issue_title: str
    worktree: WorktreeDescriptor
    machine_id: str
    agent_type: str
    sandboxed: bool = False
    container_id: Optional[str] = None
    sandbox: Optional[SandboxDescriptor] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["worktree"] = self.worktree.to_dict()
        data["sandbox"] = self.sandbox.to_dict() if self.sandbox else None
        return data


class RecoveryAction(Enum):
    """What recovery recommends for a session."""
    RESUME = "resume"      # Agent still running
    RESTART = "restart"    # Agent gone, worktree intact
    CLEANUP = "cleanup"    # Agent gone, worktree gone
    INSPECT = "inspect"    # Metadata incomplete, never acted on automatically
    NONE = "none"          # Belongs to another machine


def classify_recovery(alive: bool, worktree_exists: bool) -> RecoveryAction:
    """Recovery action for a local session with complete metadata."""
    if alive:
        return RecoveryAction.RESUME
    if worktree_exists:
        return RecoveryAction.RESTART
    return RecoveryAction.CLEANUP


@dataclass
class RecoveredSession:
    """One session as seen by the recovery scan."""
    session: str
    action: RecoveryAction
    alive: bool
    worktree_exists: bool
    is_local: bool
    metadata: Optional[AgentMetadata] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session,
            "action": self.action.value,
            "alive": self.alive,
            "worktree_exists": self.worktree_exists,
            "is_local": self.is_local,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "reason": self.reason,
        }


@dataclass
class RecoveryResult:
    """What recover_all did for one session."""
    session: str
    action: RecoveryAction
    performed: bool
    message: str


@dataclass
class AgentStatus:
    """Status row for one managed session."""
    session: str
    issue_ref: Optional[str]
    repo: Optional[str]
    issue_number: Optional[int]
    worktree: Optional[str]
    agent_type: str
    machine_id: Optional[str]
    started_at: Optional[str]
    is_attached: bool
    is_local: bool
    is_alive: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OrphanCleanupResult:
    """Outcome of the orphan sandbox pass."""
    found: int = 0
    removed: int = 0
    containers: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class CleanupResult:
    """Outcome of tearing down one agent."""
    session: str
    session_killed: bool = False
    container_removed: bool = False
    worktree_removed: bool = False
    branch_deleted: bool = False
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Orchestrator
# =============================================================================


class AgentOrchestrator:
    """
    Spawns, recovers and cleans up agents.

    Providers default to the real CLI adapters built from config; tests pass
    in fakes.
    """

    def __init__(
        self,
        config: HandyConfig,
        tmux: Optional[TmuxProvider] = None,
        worktrees: Optional[WorktreeProvider] = None,
        docker: Optional[DockerProvider] = None,
        github: Optional[GitHubProvider] = None,
        logger: Optional[HandyLogger] = None,
        machine_id: Optional[str] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: HandyConfig with provider settings and paths.
            tmux: Session provider.
            worktrees: Worktree provider for the project repository.
            docker: Sandbox provider.
            github: Issue tracker provider.
            logger: Optional logger for recording operations.
            machine_id: Override for the current machine identifier.
        """
        self.config = config
        self._logger = logger
        self.tmux = tmux or TmuxProvider(config.tmux, logger)
        self.worktrees = worktrees or WorktreeProvider(config, logger=logger)
        self.docker = docker or DockerProvider(config.sandbox, logger)
        self.github = github or GitHubProvider(config.github, logger)
        self.machine_id = machine_id or get_machine_id()

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "orchestrator"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _warn(self, warnings: list[str], message: str, event_type: str, data: dict) -> None:
        warnings.append(message)
        self._log(event_type, {**data, "warning": message}, level="warn")

    # =========================================================================
    # Spawn
    # =========================================================================

    def spawn(self, issue_ref: str, options: Optional[SpawnOptions] = None) -> SpawnResult:
        """
        Spawn an agent for an issue.

        Args:
            issue_ref: Issue in owner/repo#number form.
            options: Spawn options.

        Returns:
            SpawnResult. Non-fatal failures are listed in warnings.

        Raises:
            InvalidIssueRefError: If issue_ref is malformed.
            UnsupportedAgentTypeError: If the agent type is unknown.
            IssueNotFoundError: If the issue does not exist.
            CollisionError: If a session, worktree or branch already uses the name.
                A branch with no worktree is reused instead when
                options.reuse_branch is set.
            ToolError: If creating the worktree, session or agent fails.
        """
        options = options or SpawnOptions()
        ref = parse_issue_ref(issue_ref)
        agent = AgentType.parse(options.agent_type or self.config.agents.default_type)

        issue = self.github.get_issue(ref.repo, ref.number)

        session = session_name_for_issue(ref.number, self.config.tmux.session_prefix)
        branch = branch_name_for_issue(ref.number)
        if self.tmux.session_exists(session):
            raise CollisionError(f"Session '{session}' already exists for {ref}")
        check = self.worktrees.check_collision(branch)
        reuse = options.reuse_branch and check.kind is CollisionKind.BRANCH_ONLY and not check.path_exists
        if check.has_collision and not reuse:
            raise CollisionError(check.describe(), check)

        warnings: list[str] = []

        if reuse:
            worktree = self.worktrees.create_worktree_existing_branch(branch)
            self._log("branch_reused", {"branch": branch, "path": worktree.path})
        else:
            worktree = self.worktrees.create_worktree(branch, base_branch=options.base_branch)

        want_sandbox = self.config.sandbox.enabled if options.sandbox is None else options.sandbox
        sandboxed = want_sandbox and self.docker.is_available()
        if want_sandbox and not sandboxed:
            self._warn(warnings, "Docker is not available; agent started without a sandbox",
                       "sandbox_unavailable", {"issue_ref": str(ref)})

        self.tmux.create_session(session, worktree.path)
        metadata = AgentMetadata(
            session_id=session,
            agent_type=agent.value,
            machine_id=self.machine_id,
            started_at=utc_now_iso(),
            issue_ref=str(ref),
            repo=ref.repo,
            worktree_path=worktree.path,
            container_name=(
                container_name_for_issue(ref.number, self.config.sandbox.container_prefix)
                if sandboxed else None
            ),
        )
        self.tmux.write_metadata(session, metadata)

        sandbox: Optional[SandboxDescriptor] = None
        if sandboxed:
            sandbox = self._start_sandboxed(session, ref.repo, ref.number, agent, worktree.path, options.ports)
        else:
            auto_accept = self.config.agents.auto_accept if options.auto_accept is None else options.auto_accept
            self.tmux.send_command(session, agent.command(ref.repo, ref.number, auto_accept))

        result = SpawnResult(
            session=session,
            issue_ref=str(ref),
            issue_title=issue.title,
            worktree=worktree,
            machine_id=self.machine_id,
            agent_type=agent.value,
            sandboxed=sandboxed,
            container_id=sandbox.container_id if sandbox else None,
            sandbox=sandbox,
            warnings=warnings,
        )
        self._announce(result, options.working_labels)

        self._log("agent_spawned", {
            "session": session,
            "issue_ref": str(ref),
            "worktree": worktree.path,
            "sandboxed": sandboxed,
            "warnings": len(warnings),
        })
        return result

    def _start_sandboxed(
        self,
        session: str,
        repo: str,
        issue_number: int,
        agent: AgentType,
        worktree_path: str,
        ports: Optional[list[str]] = None,
    ) -> SandboxDescriptor:
        """
        Start the agent in a container attached to the session.

        Any container left over for the issue is removed first. Ports come
        from ``ports`` when given, otherwise from the project's own files.
        """
        sandbox_config = self.config.sandbox
        container = container_name_for_issue(issue_number, sandbox_config.container_prefix)

        if self.docker.container_exists(container):
            self.docker.remove(container, force=True)
            self._log("stale_sandbox_removed", {"container": container}, level="warn")

        if sandbox_config.network_mode == sandbox_config.network:
            self.docker.ensure_network()
        if sandbox_config.credentials_volume:
            self.docker.create_volume()

        requested = parse_port_mappings(ports) or detect_project_ports(worktree_path)
        mapped = remap_ports(
            requested,
            issue_number,
            sandbox_config.port_base,
            sandbox_config.port_range_size,
            sandbox_config.slots,
        )

        env_file = write_env_file(self._env_file_path(container), self._sandbox_credentials())
        request = SandboxRequest(
            issue_number=issue_number,
            issue_ref=f"{repo}#{issue_number}",
            agent_type=agent.value,
            worktree_path=worktree_path,
            command=agent.command(repo, issue_number, auto_accept=sandbox_config.auto_accept),
            ports=mapped,
            env_file=str(env_file),
        )
        self.tmux.send_command(session, self.docker.interactive_command(request))
        self._log("sandbox_started", {
            "session": session,
            "container": container,
            "ports": [p.to_docker_arg() for p in mapped],
        })
        return self.docker.describe(issue_number, mapped)

    def _env_file_path(self, container: str) -> Path:
        return self.config.state_path / "sandbox" / f"{container}.env"

    def _sandbox_credentials(self) -> dict[str, str]:
        """Credentials injected into a sandbox: the gh token and the Anthropic key."""
        env: dict[str, str] = {}
        try:
            token = self.github.auth_token()
        except HandyError as e:
            self._log("gh_token_unavailable", {"error": str(e)}, level="warn")
            token = None
        token = token or os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")
        if token:
            env["GH_TOKEN"] = token
            env["GITHUB_TOKEN"] = token
        anthropic_key = os.environ.get("ANTHROPIC_API_KEY")
        if anthropic_key:
            env["ANTHROPIC_API_KEY"] = anthropic_key
        return env

    def _announce(self, result: SpawnResult, working_labels: Optional[list[str]] = None) -> None:
        """Post the audit comment and working labels. Failures become warnings."""
        ref = parse_issue_ref(result.issue_ref)
        comment = format_metadata_comment(
            session=result.session,
            machine_id=result.machine_id,
            worktree=result.worktree.path,
            agent_type=result.agent_type,
            started_at=utc_now_iso(),
            status="working (sandboxed)" if result.sandboxed else "working",
        )
        try:
            self.github.add_comment(ref.repo, ref.number, comment)
        except HandyError as e:
            self._warn(result.warnings, f"Failed to post agent comment: {e}",
                       "audit_comment_failed", {"issue_ref": result.issue_ref})

        labels = self.config.github.working_labels if working_labels is None else working_labels
        if labels:
            try:
                self.github.add_labels(ref.repo, ref.number, labels)
            except HandyError as e:
                self._warn(result.warnings, f"Failed to add working labels: {e}",
                           "working_labels_failed", {"issue_ref": result.issue_ref})

    # =========================================================================
    # Status
    # =========================================================================

    def _managed_agent_sessions(self):
        master = self.config.tmux.master_session
        return [s for s in self.tmux.list_sessions() if s.name != master]

    def list_agent_statuses(self) -> list[AgentStatus]:
        """Status of every agent session on the tmux server."""
        statuses = []
        for session in self._managed_agent_sessions():
            meta = session.metadata or AgentMetadata(session_id=session.name)
            statuses.append(AgentStatus(
                session=session.name,
                issue_ref=meta.issue_ref,
                repo=meta.repo,
                issue_number=meta.issue_number,
                worktree=meta.worktree_path,
                agent_type=meta.agent_type,
                machine_id=meta.machine_id,
                started_at=meta.started_at,
                is_attached=session.attached,
                is_local=meta.machine_id == self.machine_id,
                is_alive=session.alive,
            ))
        return statuses

    def list_local_agent_statuses(self) -> list[AgentStatus]:
        return [s for s in self.list_agent_statuses() if s.is_local]

    def list_remote_agent_statuses(self) -> list[AgentStatus]:
        """Agents tagged with another machine (or no machine at all)."""
        return [s for s in self.list_agent_statuses() if not s.is_local]

    # =========================================================================
    # Recovery
    # =========================================================================

    def recover(self) -> list[RecoveredSession]:
        """
        Classify every managed agent session.

        Sessions from another machine are reported with NONE. Sessions whose
        metadata is incomplete are reported with INSPECT.
        """
        recovered = []
        for session in self._managed_agent_sessions():
            meta = session.metadata
            if meta and meta.machine_id and meta.machine_id != self.machine_id:
                recovered.append(RecoveredSession(
                    session=session.name,
                    action=RecoveryAction.NONE,
                    alive=session.alive,
                    worktree_exists=False,
                    is_local=False,
                    metadata=meta,
                    reason=f"Belongs to machine {meta.machine_id}",
                ))
                continue

            if meta is None or not meta.is_complete:
                missing = meta.missing_fields if meta else ["metadata"]
                recovered.append(RecoveredSession(
                    session=session.name,
                    action=RecoveryAction.INSPECT,
                    alive=session.alive,
                    worktree_exists=bool(meta and meta.worktree_path and Path(meta.worktree_path).exists()),
                    is_local=False,
                    metadata=meta,
                    reason=f"Incomplete metadata (missing {', '.join(missing)})",
                ))
                continue

            worktree_exists = Path(meta.worktree_path).exists()
            action = classify_recovery(session.alive, worktree_exists)
            recovered.append(RecoveredSession(
                session=session.name,
                action=action,
                alive=session.alive,
                worktree_exists=worktree_exists,
                is_local=True,
                metadata=meta,
            ))

        self._log("recovery_scan", {
            "sessions": len(recovered),
            "actions": {a.value: sum(1 for r in recovered if r.action is a) for a in RecoveryAction},
        })
        return recovered

    def recover_all(self, auto_restart: bool = False, auto_cleanup: bool = False) -> list[RecoveryResult]:
        """
        Run the recovery scan and carry out the enabled actions.

        INSPECT and NONE are never acted on.
        """
        results = []
        for item in self.recover():
            name = item.session
            action = item.action
            try:
                if action is RecoveryAction.RESTART and auto_restart:
                    self.restart_agent(name)
                    results.append(RecoveryResult(name, action, True, "Agent restarted"))
                elif action is RecoveryAction.CLEANUP and auto_cleanup:
                    self.tmux.kill_session(name)
                    results.append(RecoveryResult(name, action, True, "Session killed (worktree missing)"))
                else:
                    results.append(RecoveryResult(name, action, False, self._recovery_message(item)))
            except HandyError as e:
                self._log("recovery_action_failed", {"session": name, "action": action.value,
                                                     "error": str(e)}, level="error")
                results.append(RecoveryResult(name, action, False, f"Failed: {e}"))
        return results

    @staticmethod
    def _recovery_message(item: RecoveredSession) -> str:
        if item.action is RecoveryAction.RESUME:
            return "Agent is still running"
        if item.action is RecoveryAction.RESTART:
            return "Agent stopped; worktree intact (restart available)"
        if item.action is RecoveryAction.CLEANUP:
            return "Agent stopped; worktree missing (cleanup available)"
        return item.reason or "No action"

    def restart_agent(self, session: str, auto_accept: Optional[bool] = None) -> None:
        """
        Reissue the agent's start command from the session's stored metadata.

        A session spawned in a sandbox is restarted in a fresh container.

        Raises:
            PreconditionError: If the metadata is incomplete, from another
                machine, or names a sandbox while Docker is unavailable.
            UnsupportedAgentTypeError: If the stored agent type is unknown.
        """
        meta = self.tmux.get_metadata(session)
        if not meta.is_complete:
            raise PreconditionError(
                f"Session {session} has incomplete metadata (missing {', '.join(meta.missing_fields)})"
            )
        if meta.machine_id != self.machine_id:
            raise PreconditionError(f"Session {session} belongs to machine {meta.machine_id}")

        ref = parse_issue_ref(meta.issue_ref)
        agent = AgentType.parse(meta.agent_type)
        repo = meta.repo or ref.repo
        if meta.container_name:
            if not self.docker.is_available():
                raise PreconditionError(
                    f"Session {session} runs in sandbox {meta.container_name} but Docker is not available"
                )
            self._start_sandboxed(session, repo, ref.number, agent, meta.worktree_path)
        else:
            accept = self.config.agents.auto_accept if auto_accept is None else auto_accept
            self.tmux.send_command(session, agent.command(repo, ref.number, accept))
        self._log("agent_restarted", {
            "session": session,
            "issue_ref": meta.issue_ref,
            "sandboxed": bool(meta.container_name),
        })

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup_orphan_sandboxes(self) -> OrphanCleanupResult:
        """
        Remove sandbox containers whose issue has no live session.

        Docker being unavailable counts as nothing to clean.
        """
        result = OrphanCleanupResult()
        if not self.docker.is_available():
            return result

        live_issues: set[int] = set()
        prefix = self.config.tmux.session_prefix
        for session in self._managed_agent_sessions():
            number = session.metadata.issue_number if session.metadata else None
            if number is None and session.name.startswith(prefix):
                suffix = session.name[len(prefix):]
                number = int(suffix) if suffix.isdigit() else None
            if number is not None:
                live_issues.add(number)

        for container in self.docker.list_sandboxes():
            number = container.issue_number
            if number is None or number in live_issues:
                continue
            result.found += 1
            result.containers.append(container.name)
            try:
                self.docker.remove(container.name, force=True)
                result.removed += 1
            except HandyError as e:
                result.errors.append(f"{container.name}: {e}")

        self._log("orphan_sandboxes_cleaned", {"found": result.found, "removed": result.removed})
        return result

    def cleanup(
        self,
        session: str,
        remove_worktree: bool = False,
        delete_branch: bool = False,
    ) -> CleanupResult:
        """
        Tear down an agent: kill the session, then optionally remove the worktree.

        Raises:
            TmuxError: If the session cannot be killed. Nothing else is touched.
            GitError: If the worktree removal fails.
        """
        result = CleanupResult(session=session)
        meta = self.tmux.get_metadata(session, missing_ok=True)

        self.tmux.kill_session(session)
        result.session_killed = True

        issue_number = issue_number_from_ref(meta.issue_ref) if meta else None
        if issue_number is not None and self.docker.is_available():
            container = container_name_for_issue(issue_number, self.config.sandbox.container_prefix)
            try:
                if self.docker.container_exists(container):
                    self.docker.remove(container, force=True)
                    result.container_removed = True
            except HandyError as e:
                self._warn(result.warnings, f"Failed to remove container {container}: {e}",
                           "sandbox_remove_failed", {"session": session})
            self._env_file_path(container).unlink(missing_ok=True)

        if remove_worktree and meta and meta.worktree_path:
            removal = self.worktrees.remove_worktree(meta.worktree_path, force=True,
                                                     delete_branch=delete_branch)
            result.worktree_removed = True
            result.branch_deleted = removal.branch_deleted
            result.warnings.extend(removal.warnings)

        self._log("agent_cleaned_up", {
            "session": session,
            "worktree_removed": result.worktree_removed,
            "branch_deleted": result.branch_deleted,
        })
        return result

    # =========================================================================
    # Session passthroughs
    # =========================================================================

    def ensure_master_session(self) -> bool:
        return self.tmux.ensure_master_session()

    def get_session_output(self, session: str, lines: Optional[int] = None) -> str:
        return self.tmux.capture_output(session, lines)

    def send_command(self, session: str, command: str) -> None:
        self.tmux.send_command(session, command)

    def send_keys(self, session: str, keys: str) -> None:
        self.tmux.send_keys(session, keys)

    # =========================================================================
    # Async offload
    # =========================================================================

    async def spawn_async(self, issue_ref: str, options: Optional[SpawnOptions] = None) -> SpawnResult:
        return await asyncio.to_thread(self.spawn, issue_ref, options)

    async def recover_async(self) -> list[RecoveredSession]:
        return await asyncio.to_thread(self.recover)

    async def cleanup_orphan_sandboxes_async(self) -> OrphanCleanupResult:
        return await asyncio.to_thread(self.cleanup_orphan_sandboxes)

    async def cleanup_async(
        self,
        session: str,
        remove_worktree: bool = False,
        delete_branch: bool = False,
    ) -> CleanupResult:
        return await asyncio.to_thread(self.cleanup, session, remove_worktree, delete_branch)
