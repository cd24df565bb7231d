"""
Issue tracker provider backed by the gh CLI.

This module handles:
- Reading, creating and editing issues (body, labels, comments)
- Listing pull requests and matching them to issue branches
- Fetching a pull request's state together with its review tallies
- Opening pull requests from agent branches

Not-found is reported as IssueNotFoundError so idempotence checks can tell
"the issue does not exist" apart from "gh could not be reached".
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from handy_agents.errors import GitHubError, IssueNotFoundError, ToolNotFoundError, ToolTimeoutError
from handy_agents.providers.base import CliProvider
from handy_agents.utils.sanitize import truncate

if TYPE_CHECKING:
    from handy_agents.config import GitHubConfig
    from handy_agents.logger import HandyLogger

ISSUE_FIELDS = "number,title,body,state,labels,url"
PR_FIELDS = "number,title,body,state,headRefName,baseRefName,url,isDraft"
PR_STATUS_FIELDS = PR_FIELDS + ",mergedAt,reviews,reviewRequests"

_NOT_FOUND_MARKERS = ("could not resolve", "not found", "no issue", "no pull request")
_URL_NUMBER = re.compile(r"/(?:issues|pull)/(\d+)\s*$")


# =============================================================================
# Data types
# =============================================================================


@dataclass
class GitHubIssue:
    """An issue as returned by gh issue view/list."""
    number: int
    title: str
    body: str = ""
    state: str = "open"                  # Lowercased: open/closed
    labels: list[str] = field(default_factory=list)
    url: str = ""

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def has_label(self, label: str) -> bool:
        return label.lower() in (l.lower() for l in self.labels)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> GitHubIssue:
        return cls(
            number=int(data.get("number", 0)),
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=(data.get("state") or "open").lower(),
            labels=[l.get("name", "") if isinstance(l, dict) else str(l)
                    for l in data.get("labels") or []],
            url=data.get("url") or "",
        )


@dataclass
class GitHubPullRequest:
    """A pull request. state is lowercased: open/closed/merged."""
    number: int
    title: str
    state: str
    head_branch: str = ""
    base_branch: str = ""
    url: str = ""
    body: str = ""
    is_draft: bool = False

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> GitHubPullRequest:
        state = (data.get("state") or "open").lower()
        if state == "closed" and data.get("mergedAt"):
            state = "merged"
        return cls(
            number=int(data.get("number", 0)),
            title=data.get("title") or "",
            state=state,
            head_branch=data.get("headRefName") or "",
            base_branch=data.get("baseRefName") or "",
            url=data.get("url") or "",
            body=data.get("body") or "",
            is_draft=bool(data.get("isDraft")),
        )


@dataclass
class ReviewSummary:
    """Review tallies for a pull request, counting each reviewer's latest review."""
    approved: int = 0
    changes_requested: int = 0
    commented: int = 0
    pending: int = 0

    @property
    def has_reviewers(self) -> bool:
        return (self.approved + self.changes_requested + self.commented + self.pending) > 0

    @property
    def is_approved(self) -> bool:
        return self.approved > 0 and self.changes_requested == 0

    @classmethod
    def from_json(cls, reviews: list[dict], requests: list[dict]) -> ReviewSummary:
        latest: dict[str, str] = {}
        for index, review in enumerate(reviews or []):
            author = (review.get("author") or {}).get("login") or f"reviewer-{index}"
            latest[author] = (review.get("state") or "").upper()

        summary = cls(pending=len(requests or []))
        for state in latest.values():
            if state == "APPROVED":
                summary.approved += 1
            elif state == "CHANGES_REQUESTED":
                summary.changes_requested += 1
            elif state == "COMMENTED":
                summary.commented += 1
            elif state == "PENDING":
                summary.pending += 1
        return summary


@dataclass
class PullRequestStatus:
    """A pull request plus its review tallies."""
    pr: GitHubPullRequest
    reviews: ReviewSummary


# =============================================================================
# Provider
# =============================================================================


class GitHubProvider(CliProvider):
    """Issue tracker provider over the gh CLI."""

    component = "github"
    error_class = GitHubError

    def __init__(
        self,
        config: GitHubConfig,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        super().__init__(config.binary, config.timeout_seconds, logger)
        self.config = config
        self._gh_authenticated: Optional[bool] = None

    def check_auth(self) -> bool:
        """
        Check that gh is installed and authenticated.

        Cached after the first call.
        """
        if self._gh_authenticated is None:
            try:
                result = self._run(["auth", "status"], timeout=10)
                self._gh_authenticated = result.ok
                if not result.ok:
                    self._log("gh_auth_failed", {"stderr": truncate(result.stderr, 200)}, level="warn")
            except (ToolNotFoundError, ToolTimeoutError) as e:
                self._log("gh_not_available", {"error": str(e)}, level="warn")
                self._gh_authenticated = False
        return self._gh_authenticated

    def auth_token(self) -> Optional[str]:
        """Token gh is logged in with, or None."""
        result = self._run(["auth", "token"], timeout=10)
        token = result.stdout.strip() if result.ok else ""
        return token or None

    def _json(self, args: list[str], what: str) -> Any:
        result = self._run_checked(args, what=what)
        text = result.stdout.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise GitHubError(f"{what}: invalid JSON from gh: {e}")

    # =========================================================================
    # Issues
    # =========================================================================

    def get_issue(self, repo: str, number: int) -> GitHubIssue:
        """
        Fetch one issue.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            GitHubError: For any other gh failure.
        """
        args = ["issue", "view", str(number), "--repo", repo, "--json", ISSUE_FIELDS]
        result = self._run(args)
        if not result.ok:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
                raise IssueNotFoundError(repo, number)
            raise GitHubError(f"gh issue view {repo}#{number} failed: {result.stderr.strip()}",
                              args, result.returncode, result.stderr)
        try:
            return GitHubIssue.from_json(json.loads(result.stdout))
        except json.JSONDecodeError as e:
            raise GitHubError(f"Invalid JSON for {repo}#{number}: {e}")

    def list_issues(
        self,
        repo: str,
        state: str = "open",
        labels: Optional[list[str]] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> list[GitHubIssue]:
        """List issues. state is open, closed or all."""
        args = ["issue", "list", "--repo", repo, "--state", state,
                "--limit", str(limit), "--json", ISSUE_FIELDS]
        for label in labels or []:
            args.extend(["--label", label])
        if search:
            args.extend(["--search", search])
        data = self._json(args, what=f"list issues in {repo}") or []
        return [GitHubIssue.from_json(item) for item in data]

    def list_all_issues(self, repo: str, limit: int = 500) -> list[GitHubIssue]:
        """Open and closed issues, bodies included."""
        return self.list_issues(repo, state="all", limit=limit)

    def create_issue(
        self,
        repo: str,
        title: str,
        body: str,
        labels: Optional[list[str]] = None,
    ) -> int:
        """
        Create an issue and return its number.

        Labels are applied in a second step so a missing label does not
        prevent the issue from being created.
        """
        result = self._run_checked(
            ["issue", "create", "--repo", repo, "--title", title, "--body-file", "-"],
            input_text=body,
            what=f"create issue in {repo}",
        )
        number = self._number_from_url(result.stdout)
        self._log("issue_created", {"repo": repo, "number": number})
        if labels:
            self.add_labels(repo, number, labels)
        return number

    def update_issue_body(self, repo: str, number: int, body: str) -> None:
        self._run_checked(
            ["issue", "edit", str(number), "--repo", repo, "--body-file", "-"],
            input_text=body,
            what=f"update body of {repo}#{number}",
        )

    def add_comment(self, repo: str, number: int, body: str) -> None:
        self._run_checked(
            ["issue", "comment", str(number), "--repo", repo, "--body-file", "-"],
            input_text=body,
            what=f"comment on {repo}#{number}",
        )

    def update_labels(
        self,
        repo: str,
        number: int,
        add: Optional[list[str]] = None,
        remove: Optional[list[str]] = None,
    ) -> None:
        """Add and remove labels on an issue in one edit."""
        args = ["issue", "edit", str(number), "--repo", repo]
        for label in add or []:
            args.extend(["--add-label", label])
        for label in remove or []:
            args.extend(["--remove-label", label])
        if len(args) == 5:
            return
        self._run_checked(args, what=f"update labels on {repo}#{number}")

    def add_labels(self, repo: str, number: int, labels: list[str]) -> None:
        self.update_labels(repo, number, add=labels)

    # =========================================================================
    # Pull requests
    # =========================================================================

    def list_prs(
        self,
        repo: str,
        state: str = "open",
        head: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> list[GitHubPullRequest]:
        args = ["pr", "list", "--repo", repo, "--state", state,
                "--limit", str(limit), "--json", PR_FIELDS + ",mergedAt"]
        if head:
            args.extend(["--head", head])
        if search:
            args.extend(["--search", search])
        data = self._json(args, what=f"list pull requests in {repo}") or []
        return [GitHubPullRequest.from_json(item) for item in data]

    def find_pr_by_branch(self, repo: str, branch: str) -> Optional[GitHubPullRequest]:
        """Most recent pull request whose head is exactly this branch."""
        for pr in self.list_prs(repo, state="all", head=branch, limit=10):
            if pr.head_branch == branch:
                return pr
        return None

    def find_prs_for_issue(self, repo: str, issue_number: int) -> list[GitHubPullRequest]:
        """Pull requests that reference an issue in their body or use its issue-{n} branch."""
        reference = re.compile(rf"#{issue_number}\b")
        matches = []
        for pr in self.list_prs(repo, state="all", search=f"{issue_number}", limit=30):
            if pr.head_branch == f"issue-{issue_number}" or reference.search(pr.body):
                matches.append(pr)
        return matches

    def get_pr_status(self, repo: str, number: int) -> PullRequestStatus:
        """
        Fetch a pull request with review tallies.

        Raises:
            IssueNotFoundError: If the pull request does not exist.
            GitHubError: For any other gh failure.
        """
        args = ["pr", "view", str(number), "--repo", repo, "--json", PR_STATUS_FIELDS]
        result = self._run(args)
        if not result.ok:
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
                raise IssueNotFoundError(repo, number, kind="Pull request")
            raise GitHubError(f"gh pr view {repo}#{number} failed: {result.stderr.strip()}",
                              args, result.returncode, result.stderr)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise GitHubError(f"Invalid JSON for pull request {repo}#{number}: {e}")
        return PullRequestStatus(
            pr=GitHubPullRequest.from_json(data),
            reviews=ReviewSummary.from_json(data.get("reviews") or [],
                                            data.get("reviewRequests") or []),
        )

    def create_pr(
        self,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = False,
        cwd: Optional[str] = None,
    ) -> GitHubPullRequest:
        """Open a pull request and return it (number parsed from the printed URL)."""
        args = ["pr", "create", "--repo", repo, "--head", head, "--base", base,
                "--title", title, "--body-file", "-"]
        if draft:
            args.append("--draft")
        result = self._run_checked(args, cwd=cwd, input_text=body, what=f"create pull request for {head}")
        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        number = self._number_from_url(url)
        self._log("pr_created", {"repo": repo, "number": number, "head": head})
        return GitHubPullRequest(
            number=number, title=title, state="open", head_branch=head,
            base_branch=base, url=url, body=body, is_draft=draft,
        )

    def add_pr_labels(self, repo: str, number: int, labels: list[str]) -> None:
        args = ["pr", "edit", str(number), "--repo", repo]
        for label in labels:
            args.extend(["--add-label", label])
        self._run_checked(args, what=f"label pull request {repo}#{number}")

    @staticmethod
    def _number_from_url(output: str) -> int:
        for line in reversed(output.strip().splitlines()):
            match = _URL_NUMBER.search(line.strip())
            if match:
                return int(match.group(1))
        raise GitHubError(f"Could not parse a number from gh output: {output.strip()[:200]}")
