"""
Agent completion workflow.

This module handles:
- The audit comment posted on an issue when an agent starts
- Completing an agent's work: push the branch, open a PR that closes the
  issue, swap working labels for PR labels, comment on the issue
- Cleaning up an agent once its PR is merged
- Finding the PR opened from an agent's branch
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from handy_agents.allocation import branch_name_for_issue
from handy_agents.errors import HandyError, PreconditionError
from handy_agents.models import parse_issue_ref

if TYPE_CHECKING:
    from handy_agents.logger import HandyLogger
    from handy_agents.orchestrator import AgentOrchestrator, CleanupResult
    from handy_agents.providers.github import GitHubPullRequest

METADATA_MARKER = "HANDY_AGENT_METADATA"
_METADATA_BLOCK = re.compile(rf"<!--\s*{METADATA_MARKER}\s*(\{{.*?\}})\s*-->", re.DOTALL)


def format_metadata_comment(
    session: str,
    machine_id: str,
    worktree: Optional[str],
    agent_type: str,
    started_at: str,
    status: str = "working",
) -> str:
    """
    Issue comment announcing an agent.

    The JSON block lets the assignment be recovered from the issue alone.
    """
    payload = {
        "session": session,
        "machine_id": machine_id,
        "worktree": worktree,
        "agent_type": agent_type,
        "started_at": started_at,
        "status": status,
    }
    lines = [
        f"<!-- {METADATA_MARKER}",
        json.dumps(payload, indent=2),
        "-->",
        "",
        "🤖 **Agent Assigned**",
        "",
        f"**Session:** `{session}`",
        f"**Machine:** `{machine_id}`",
        f"**Agent:** {agent_type}",
        f"**Status:** {status}",
    ]
    if worktree:
        lines.append(f"**Worktree:** `{worktree}`")
    return "\n".join(lines)


def parse_metadata_comment(body: str) -> Optional[dict[str, Any]]:
    """Metadata payload embedded in a comment, or None."""
    match = _METADATA_BLOCK.search(body or "")
    if not match:
        return None
    try:
        return json.loads(match.group(1))
    except json.JSONDecodeError:
        return None


@dataclass
class CompleteWorkResult:
    """Outcome of complete_agent_work."""
    pull_request: GitHubPullRequest
    branch: str
    issue_updated: bool = False
    labels_updated: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class MergedPrCheck:
    """Outcome of check_and_cleanup_merged_pr."""
    pr_number: int
    state: str
    cleaned_up: bool = False
    cleanup: Optional[CleanupResult] = None
    warnings: list[str] = field(default_factory=list)


class AgentLifecycle:
    """Completion-side operations for a running agent."""

    def __init__(
        self,
        orchestrator: AgentOrchestrator,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = orchestrator.config
        self.tmux = orchestrator.tmux
        self.worktrees = orchestrator.worktrees
        self.github = orchestrator.github
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "lifecycle"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _session_context(self, session: str):
        """(metadata, repo, issue_number) for a session with repo and worktree recorded."""
        meta = self.tmux.get_metadata(session)
        if not meta.repo and meta.issue_ref:
            meta.repo = parse_issue_ref(meta.issue_ref).repo
        if not meta.repo:
            raise PreconditionError(f"Session {session} has no associated repository")
        if not meta.worktree_path:
            raise PreconditionError(f"Session {session} has no associated worktree")
        return meta, meta.repo, meta.issue_number

    def complete_agent_work(
        self,
        session: str,
        title: Optional[str] = None,
        body: Optional[str] = None,
        draft: bool = False,
    ) -> CompleteWorkResult:
        """
        Push the agent's branch and open a pull request for it.

        Raises:
            PreconditionError: If the session lacks repo or worktree metadata.
            GitError: If the push fails.
            GitHubError: If the pull request cannot be created.
        """
        meta, repo, issue_number = self._session_context(session)

        info = self.worktrees.get_worktree_info(meta.worktree_path)
        branch = info.branch if info and info.branch else None
        if branch is None:
            if issue_number is None:
                raise PreconditionError(f"Worktree {meta.worktree_path} has no branch")
            branch = branch_name_for_issue(issue_number)
        base = self.worktrees.get_default_branch()

        if title is None:
            title = f"Resolve #{issue_number}" if issue_number else f"Agent work from {branch}"
            if issue_number is not None:
                try:
                    title = f"{self.github.get_issue(repo, issue_number).title} (#{issue_number})"
                except HandyError:
                    pass

        if issue_number is not None:
            pr_body = (body or f"Automated PR for issue #{issue_number}") + f"\n\nCloses #{issue_number}"
        else:
            pr_body = body or ""

        self.worktrees.push_branch(meta.worktree_path, branch)
        pr = self.github.create_pr(repo, head=branch, base=base, title=title, body=pr_body,
                                   draft=draft, cwd=meta.worktree_path)
        result = CompleteWorkResult(pull_request=pr, branch=branch)

        if self.config.github.pr_labels:
            try:
                self.github.add_pr_labels(repo, pr.number, self.config.github.pr_labels)
            except HandyError as e:
                result.warnings.append(f"Failed to label PR #{pr.number}: {e}")

        if issue_number is not None:
            comment = "\n".join([
                "🤖 **Agent Work Complete**",
                "",
                f"Pull request created: #{pr.number}",
                "",
                f"**Session:** `{session}`",
                f"**Machine:** `{meta.machine_id or 'unknown'}`",
                f"**Branch:** `{branch}`",
            ])
            try:
                self.github.add_comment(repo, issue_number, comment)
                result.issue_updated = True
            except HandyError as e:
                result.warnings.append(f"Failed to comment on #{issue_number}: {e}")

            try:
                self.github.update_labels(repo, issue_number,
                                          add=self.config.github.pr_labels,
                                          remove=self.config.github.working_labels)
                result.labels_updated = True
            except HandyError as e:
                result.warnings.append(f"Failed to update labels on #{issue_number}: {e}")

        for warning in result.warnings:
            self._log("complete_work_warning", {"session": session, "warning": warning}, level="warn")
        self._log("agent_work_completed", {"session": session, "pr_number": pr.number, "branch": branch})
        return result

    def check_and_cleanup_merged_pr(self, session: str, pr_number: int) -> MergedPrCheck:
        """
        Clean up an agent when its pull request has been merged.

        Does nothing unless the PR state is merged. On merge the session is
        killed and the worktree and branch removed.
        """
        meta, repo, issue_number = self._session_context(session)
        status = self.github.get_pr_status(repo, pr_number)
        result = MergedPrCheck(pr_number=pr_number, state=status.pr.state)
        if status.pr.state != "merged":
            return result

        result.cleanup = self.orchestrator.cleanup(session, remove_worktree=True, delete_branch=True)
        result.cleaned_up = True
        result.warnings.extend(result.cleanup.warnings)

        if issue_number is not None:
            comment = "\n".join([
                "✅ **Agent Work Merged**",
                "",
                f"PR #{pr_number} has been merged. Agent session `{session}` and its worktree were cleaned up.",
            ])
            try:
                self.github.add_comment(repo, issue_number, comment)
            except HandyError as e:
                result.warnings.append(f"Failed to comment on #{issue_number}: {e}")

        self._log("merged_pr_cleaned_up", {"session": session, "pr_number": pr_number})
        return result

    def detect_pr_for_agent(self, session: str) -> Optional[GitHubPullRequest]:
        """Pull request opened from the session's issue-{n} branch, if any."""
        meta, repo, issue_number = self._session_context(session)
        if issue_number is None:
            return None
        return self.github.find_pr_by_branch(repo, branch_name_for_issue(issue_number))
