"""
Core data models for Handy Agents.

This module defines the shapes shared by the providers and the orchestrator:
- AgentType: the closed set of launchable agents and their commands
- AgentMetadata: what a session knows about itself (stored in the session)
- WorktreeDescriptor / SandboxDescriptor / PortMapping: allocated resources
- Issue references in owner/repo#number form
"""

from __future__ import annotations

import re
import shlex
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from handy_agents.errors import InvalidIssueRefError, UnsupportedAgentTypeError


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def get_machine_id() -> str:
    """Identifier for the current machine (its hostname)."""
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


# =============================================================================
# Issue references
# =============================================================================


_ISSUE_REF_PATTERN = re.compile(r"^([\w.\-]+/[\w.\-]+)#(\d+)$")


@dataclass(frozen=True)
class IssueRef:
    """A GitHub issue reference such as org/repo#42."""
    repo: str
    number: int

    def __str__(self) -> str:
        return f"{self.repo}#{self.number}"


def parse_issue_ref(issue_ref: str) -> IssueRef:
    """
    Parse an issue reference like "org/repo#123".

    Raises:
        InvalidIssueRefError: If the reference is malformed.
    """
    match = _ISSUE_REF_PATTERN.match((issue_ref or "").strip())
    if not match:
        raise InvalidIssueRefError(
            f"Invalid issue reference: {issue_ref}. Expected format: org/repo#123"
        )
    return IssueRef(repo=match.group(1), number=int(match.group(2)))


def issue_number_from_ref(issue_ref: Optional[str]) -> Optional[int]:
    """Issue number from a reference, or None if absent or malformed."""
    if not issue_ref:
        return None
    try:
        return parse_issue_ref(issue_ref).number
    except InvalidIssueRefError:
        return None


# =============================================================================
# Agent types
# =============================================================================


class AgentType(Enum):
    """
    Agents that can be launched in a session or sandbox.

    Each member owns its command template; there is no fallback for
    unknown names.
    """

    CLAUDE = "claude"
    AIDER = "aider"

    @classmethod
    def parse(cls, value: str | AgentType) -> AgentType:
        """
        Resolve an agent type name (case-insensitive).

        Raises:
            UnsupportedAgentTypeError: If the name is not a known agent.
        """
        if isinstance(value, AgentType):
            return value
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise UnsupportedAgentTypeError(value, [m.value for m in cls])

    def command(self, repo: str, issue_number: int, auto_accept: bool = False) -> str:
        """
        Shell command that starts this agent on an issue.

        Args:
            repo: Repository in owner/repo format.
            issue_number: Issue to work on.
            auto_accept: Skip interactive permission prompts.

        Returns:
            A single shell command line.
        """
        if self is AgentType.CLAUDE:
            prompt = (
                f"Work on GitHub issue {repo}#{issue_number}: Implement the requirements "
                "described in the issue. When done, commit your changes and create a PR."
            )
            flags = ["--dangerously-skip-permissions"] if auto_accept else []
            return " ".join(["claude", *flags, shlex.quote(prompt)])

        prompt = (
            f"Work on GitHub issue {repo}#{issue_number}. "
            "Implement the requirements and commit when done."
        )
        flags = ["--yes-always"] if auto_accept else []
        return " ".join(["aider", *flags, "--message", shlex.quote(prompt)])


# =============================================================================
# Session metadata
# =============================================================================


ENV_ISSUE_REF = "HANDY_ISSUE_REF"
ENV_REPO = "HANDY_REPO"
ENV_WORKTREE = "HANDY_WORKTREE"
ENV_AGENT_TYPE = "HANDY_AGENT_TYPE"
ENV_MACHINE_ID = "HANDY_MACHINE_ID"
ENV_STARTED_AT = "HANDY_STARTED_AT"
ENV_CONTAINER = "HANDY_CONTAINER"

METADATA_ENV_KEYS = (
    ENV_AGENT_TYPE,
    ENV_MACHINE_ID,
    ENV_STARTED_AT,
    ENV_ISSUE_REF,
    ENV_REPO,
    ENV_WORKTREE,
    ENV_CONTAINER,
)


@dataclass
class AgentMetadata:
    """
    Identity of an agent session.

    Written into the session's environment at spawn time so it outlives the
    orchestrator process. Fields read back from a session can be missing if
    the spawn was interrupted between session creation and metadata write.
    """
    session_id: str
    agent_type: str = "unknown"
    machine_id: Optional[str] = None
    started_at: Optional[str] = None
    issue_ref: Optional[str] = None
    repo: Optional[str] = None
    worktree_path: Optional[str] = None
    container_name: Optional[str] = None

    @property
    def issue_number(self) -> Optional[int]:
        """Issue number parsed from issue_ref."""
        return issue_number_from_ref(self.issue_ref)

    @property
    def is_complete(self) -> bool:
        """True when every field recovery depends on is present."""
        return bool(self.machine_id and self.issue_ref and self.worktree_path)

    @property
    def missing_fields(self) -> list[str]:
        """Names of recovery-relevant fields that are absent."""
        missing = []
        if not self.machine_id:
            missing.append("machine_id")
        if not self.issue_ref:
            missing.append("issue_ref")
        if not self.worktree_path:
            missing.append("worktree_path")
        return missing

    def to_env(self) -> dict[str, str]:
        """Session environment entries, in write order, skipping empty values."""
        values = {
            ENV_AGENT_TYPE: self.agent_type,
            ENV_MACHINE_ID: self.machine_id,
            ENV_STARTED_AT: self.started_at,
            ENV_ISSUE_REF: self.issue_ref,
            ENV_REPO: self.repo,
            ENV_WORKTREE: self.worktree_path,
            ENV_CONTAINER: self.container_name,
        }
        return {k: v for k, v in values.items() if v}

    @classmethod
    def from_env(cls, session_id: str, env: dict[str, str]) -> AgentMetadata:
        """Rebuild metadata from a session environment. Missing keys stay None."""
        return cls(
            session_id=session_id,
            agent_type=env.get(ENV_AGENT_TYPE) or "unknown",
            machine_id=env.get(ENV_MACHINE_ID) or None,
            started_at=env.get(ENV_STARTED_AT) or None,
            issue_ref=env.get(ENV_ISSUE_REF) or None,
            repo=env.get(ENV_REPO) or None,
            worktree_path=env.get(ENV_WORKTREE) or None,
            container_name=env.get(ENV_CONTAINER) or None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentMetadata:
        """Create from dictionary."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# =============================================================================
# Allocated resources
# =============================================================================


@dataclass
class WorktreeDescriptor:
    """A worktree checked out on its own branch."""
    path: str
    branch: str
    base_branch: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class PortMapping:
    """A host:container port mapping."""
    host_port: int
    container_port: int
    protocol: Optional[str] = None

    def to_docker_arg(self) -> str:
        """Value for docker run -p."""
        spec = f"{self.host_port}:{self.container_port}"
        if self.protocol:
            spec += f"/{self.protocol}"
        return spec


@dataclass
class SandboxDescriptor:
    """A container sandbox allocated for one issue."""
    container_name: str
    port_range: tuple[int, int]
    network_identity: str
    container_id: Optional[str] = None
    port_mappings: list[PortMapping] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["port_range"] = list(self.port_range)
        return data
