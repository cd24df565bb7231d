"""Adapters over the external command-line tools (tmux, git, docker, gh)."""

from handy_agents.providers.base import CliProvider, CommandResult
from handy_agents.providers.docker import ContainerInfo, ContainerStatus, DockerProvider, SandboxRequest
from handy_agents.providers.github import (
    GitHubIssue,
    GitHubProvider,
    GitHubPullRequest,
    PullRequestStatus,
    ReviewSummary,
)
from handy_agents.providers.tmux import TmuxProvider, TmuxSession
from handy_agents.providers.worktree import WorktreeEntry, WorktreeProvider

__all__ = [
    "CliProvider",
    "CommandResult",
    "ContainerInfo",
    "ContainerStatus",
    "DockerProvider",
    "GitHubIssue",
    "GitHubProvider",
    "GitHubPullRequest",
    "PullRequestStatus",
    "ReviewSummary",
    "SandboxRequest",
    "TmuxProvider",
    "TmuxSession",
    "WorktreeEntry",
    "WorktreeProvider",
]
