"""
Git worktree provider.

This module handles:
- Enumerating registered worktrees (git worktree list --porcelain)
- Collision checks for the deterministic issue-{n} branch name
- Creating a worktree on a new or existing branch
- Removing a worktree and, optionally, its branch
- Detecting the repository's default branch
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from handy_agents.allocation import CollisionCheck
from handy_agents.errors import CollisionError, GitError
from handy_agents.models import WorktreeDescriptor
from handy_agents.providers.base import CliProvider
from handy_agents.utils.sanitize import sanitize_output

if TYPE_CHECKING:
    from handy_agents.config import HandyConfig
    from handy_agents.logger import HandyLogger


@dataclass
class WorktreeEntry:
    """One entry from git worktree list."""
    path: str
    head: str = ""
    branch: Optional[str] = None       # Short name, None when detached
    bare: bool = False
    detached: bool = False
    prunable: bool = False


@dataclass
class RemoveResult:
    """Outcome of remove_worktree."""
    path: str
    branch: Optional[str] = None
    branch_deleted: bool = False
    warnings: list[str] = field(default_factory=list)


def parse_worktree_porcelain(output: str) -> list[WorktreeEntry]:
    """Parse git worktree list --porcelain output into entries."""
    entries: list[WorktreeEntry] = []
    current: Optional[WorktreeEntry] = None

    for line in output.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = None
            continue

        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                entries.append(current)
            current = WorktreeEntry(path=value)
        elif current is None:
            continue
        elif key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "bare":
            current.bare = True
        elif key == "detached":
            current.detached = True
        elif key == "prunable":
            current.prunable = True

    if current:
        entries.append(current)
    return entries


class WorktreeProvider(CliProvider):
    """Worktree provider over the git CLI, bound to one repository checkout."""

    component = "worktree"
    error_class = GitError

    def __init__(
        self,
        config: HandyConfig,
        repo_path: Optional[str] = None,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        super().__init__(config.worktree.binary, config.worktree.timeout_seconds, logger)
        self.config = config
        self.repo_path = str(Path(repo_path or config.repo_root).absolute())

    def _git(self, args: list[str], what: Optional[str] = None, cwd: Optional[str] = None):
        return self._run_checked(args, cwd=cwd or self.repo_path, what=what)

    def worktree_path_for(self, branch: str) -> Path:
        """Directory a worktree for this branch is created in."""
        return self.config.worktrees_path / f"{self.config.worktree.prefix}{branch}"

    # =========================================================================
    # Queries
    # =========================================================================

    def list_worktrees(self) -> list[WorktreeEntry]:
        """All worktrees registered with the repository, main checkout first."""
        result = self._git(["worktree", "list", "--porcelain"], what="list worktrees")
        return parse_worktree_porcelain(result.stdout)

    def get_worktree_info(self, path: str) -> Optional[WorktreeEntry]:
        """Entry for a worktree path, or None if no registered worktree lives there."""
        target = Path(path).absolute()
        for entry in self.list_worktrees():
            if Path(entry.path).absolute() == target:
                return entry
        return None

    def branch_exists(self, branch: str) -> bool:
        """True if a local branch with this name exists."""
        result = self._run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=self.repo_path,
        )
        return result.ok

    def check_collision(self, branch: str, path: Optional[str] = None) -> CollisionCheck:
        """
        Check whether a branch name or worktree path is already in use.

        Args:
            branch: Branch the new worktree would use.
            path: Target directory (defaults to the derived worktree path).

        Returns:
            CollisionCheck distinguishing a live worktree from a bare branch.
        """
        target = Path(path) if path else self.worktree_path_for(branch)
        check = CollisionCheck(branch=branch, path=str(target))

        target_abs = target.absolute()
        for entry in self.list_worktrees():
            if entry.branch == branch or Path(entry.path).absolute() == target_abs:
                check.worktree_exists = True
                check.existing_worktree_path = entry.path
                break

        check.branch_exists = self.branch_exists(branch)
        check.path_exists = target.exists()
        return check

    def get_default_branch(self) -> str:
        """
        Default branch of the repository.

        Uses the configured base branch if set, then origin/HEAD, then the
        first of main/master that exists, then the current branch.
        """
        if self.config.worktree.base_branch:
            return self.config.worktree.base_branch

        result = self._run(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"],
                           cwd=self.repo_path)
        if result.ok and result.stdout.strip():
            return result.stdout.strip().removeprefix("origin/")

        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate

        result = self._git(["rev-parse", "--abbrev-ref", "HEAD"], what="read current branch")
        return result.stdout.strip() or "main"

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_worktree(
        self,
        branch: str,
        base_branch: Optional[str] = None,
        path: Optional[str] = None,
    ) -> WorktreeDescriptor:
        """
        Create a worktree on a new branch.

        Raises:
            CollisionError: If the branch or path is already in use.
            GitError: If git worktree add fails.
        """
        check = self.check_collision(branch, path)
        if check.has_collision:
            raise CollisionError(check.describe(), check)

        base = base_branch or self.get_default_branch()
        target = Path(check.path)
        target.parent.mkdir(parents=True, exist_ok=True)

        self._git(["worktree", "add", "-b", branch, str(target), base],
                  what=f"create worktree for {branch}")
        self._log("worktree_created", {"branch": branch, "path": str(target), "base": base})
        return WorktreeDescriptor(path=str(target), branch=branch, base_branch=base)

    def create_worktree_existing_branch(
        self,
        branch: str,
        path: Optional[str] = None,
    ) -> WorktreeDescriptor:
        """
        Create a worktree for a branch that already exists but has no worktree.

        Raises:
            CollisionError: If a worktree already uses the branch or the path exists.
            GitError: If the branch does not exist or git fails.
        """
        check = self.check_collision(branch, path)
        if check.worktree_exists or check.path_exists:
            raise CollisionError(check.describe(), check)
        if not check.branch_exists:
            raise GitError(f"Branch '{branch}' does not exist")

        target = Path(check.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._git(["worktree", "add", str(target), branch],
                  what=f"create worktree for existing {branch}")
        self._log("worktree_created", {"branch": branch, "path": str(target), "existing": True})
        return WorktreeDescriptor(path=str(target), branch=branch, base_branch="")

    def remove_worktree(
        self,
        path: str,
        force: bool = True,
        delete_branch: bool = False,
    ) -> RemoveResult:
        """
        Remove a worktree, optionally deleting its branch.

        Branch deletion failure is reported as a warning, not raised.

        Raises:
            GitError: If the worktree itself cannot be removed.
        """
        info = self.get_worktree_info(path)
        result = RemoveResult(path=path, branch=info.branch if info else None)

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(path)
        self._git(args, what=f"remove worktree {path}")
        self._log("worktree_removed", {"path": path})

        if delete_branch and result.branch:
            deleted = self._run(["branch", "-D", result.branch], cwd=self.repo_path)
            if deleted.ok:
                result.branch_deleted = True
            else:
                message = f"Failed to delete branch {result.branch}: {sanitize_output(deleted.stderr.strip())}"
                result.warnings.append(message)
                self._log("branch_delete_failed", {"branch": result.branch}, level="warn")

        return result

    def prune(self) -> None:
        """Drop administrative entries for worktrees whose directories are gone."""
        self._git(["worktree", "prune"], what="prune worktrees")

    def push_branch(self, worktree_path: str, branch: str) -> None:
        """Push a branch from a worktree and set its upstream."""
        self._git(["push", "-u", "origin", branch], what=f"push {branch}", cwd=worktree_path)
        self._log("branch_pushed", {"branch": branch})
