"""
Exception taxonomy for Handy Agents.

This module provides:
- PreconditionError family: raised before any resource is touched
- ToolError family: non-zero exits from tmux, git, docker and gh
- StateStoreError for persisted document failures

Partial failures inside multi-step operations are not exceptions; they are
collected as warnings on the operation's result object.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

from handy_agents.utils.sanitize import sanitize_output

if TYPE_CHECKING:
    from handy_agents.allocation import CollisionCheck


class HandyError(Exception):
    """Base class for every error raised by Handy Agents."""
    pass


# =============================================================================
# Precondition violations
# =============================================================================


class PreconditionError(HandyError):
    """An operation was refused before any action was attempted."""
    pass


class IssueNotFoundError(PreconditionError):
    """The referenced issue or pull request does not exist."""

    def __init__(self, repo: str, number: int, kind: str = "Issue") -> None:
        super().__init__(f"{kind} {repo}#{number} not found")
        self.repo = repo
        self.number = number


class CollisionError(PreconditionError):
    """A worktree, branch or session already uses the derived name."""

    def __init__(self, message: str, check: Optional[CollisionCheck] = None) -> None:
        super().__init__(message)
        self.check = check


class UnsupportedAgentTypeError(PreconditionError):
    """The agent type has no launch command."""

    def __init__(self, agent_type: str, supported: Sequence[str]) -> None:
        super().__init__(
            f"Agent type '{agent_type}' is not supported. "
            f"Supported: {', '.join(supported)}"
        )
        self.agent_type = agent_type


class InvalidIssueRefError(PreconditionError):
    """An issue reference is not in owner/repo#number form."""
    pass


class NotAnEpicError(PreconditionError):
    """The issue has neither an [EPIC] title prefix nor an epic label."""
    pass


class PipelineItemNotFoundError(PreconditionError):
    """No pipeline item with the given id exists."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Pipeline item not found: {item_id}")
        self.item_id = item_id


class InvalidTransitionError(PreconditionError):
    """A pipeline or phase transition is not allowed from the current state."""
    pass


# =============================================================================
# External tool failures
# =============================================================================


class ToolError(HandyError):
    """
    An external command exited non-zero.

    The stored stderr and message are sanitized, so the exception can be
    logged or printed as-is.
    """

    tool = "tool"

    def __init__(
        self,
        message: str,
        args: Optional[Sequence[str]] = None,
        returncode: int = -1,
        stderr: str = "",
    ) -> None:
        super().__init__(sanitize_output(message))
        self.command = [sanitize_output(a) for a in (args or [])]
        self.returncode = returncode
        self.stderr = sanitize_output(stderr)


class ToolNotFoundError(ToolError):
    """The tool binary is not installed or not on PATH."""
    pass


class ToolTimeoutError(ToolError):
    """The tool did not finish within its timeout."""
    pass


class TmuxError(ToolError):
    """tmux command failed."""
    tool = "tmux"


class GitError(ToolError):
    """git command failed."""
    tool = "git"


class DockerError(ToolError):
    """docker command failed."""
    tool = "docker"


class GitHubError(ToolError):
    """gh command failed for a reason other than not-found."""
    tool = "gh"


# =============================================================================
# Persistence
# =============================================================================


class StateStoreError(HandyError):
    """Raised when a persisted store cannot be locked, read or written."""
    pass
