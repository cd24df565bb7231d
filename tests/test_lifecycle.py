"""Tests for the agent completion workflow."""

import pytest

from handy_agents.errors import PreconditionError
from handy_agents.lifecycle import (
    METADATA_MARKER,
    AgentLifecycle,
    format_metadata_comment,
    parse_metadata_comment,
)
from handy_agents.models import AgentMetadata

from tests.conftest import TRACKING_REPO


@pytest.fixture
def lifecycle(orchestrator):
    return AgentLifecycle(orchestrator)


@pytest.fixture
def spawned(orchestrator, github):
    github.add_issue(TRACKING_REPO, 42, "Login fails on Safari", labels=["agent-assigned"])
    return orchestrator.spawn(f"{TRACKING_REPO}#42")


class TestMetadataComment:
    """Tests for the audit comment format."""

    def test_round_trip(self):
        body = format_metadata_comment(
            session="handy-agent-42",
            machine_id="box",
            worktree="/w/issue-42",
            agent_type="claude",
            started_at="2026-01-01T00:00:00+00:00",
        )

        assert body.startswith(f"<!-- {METADATA_MARKER}")
        assert "**Worktree:** `/w/issue-42`" in body
        assert parse_metadata_comment(body) == {
            "session": "handy-agent-42",
            "machine_id": "box",
            "worktree": "/w/issue-42",
            "agent_type": "claude",
            "started_at": "2026-01-01T00:00:00+00:00",
            "status": "working",
        }

    def test_no_worktree_line_without_worktree(self):
        body = format_metadata_comment("handy-agent-1", "box", None, "aider", "t")

        assert "Worktree" not in body

    @pytest.mark.parametrize("body", [
        "",
        "Just a regular comment",
        f"<!-- {METADATA_MARKER} {{not json}} -->",
    ])
    def test_parse_rejects_non_metadata(self, body):
        assert parse_metadata_comment(body) is None


class TestCompleteAgentWork:
    """Tests for complete_agent_work()."""

    def test_pushes_and_opens_pr(self, lifecycle, spawned, github, worktrees):
        result = lifecycle.complete_agent_work("handy-agent-42")

        pr = result.pull_request
        assert worktrees.pushed == ["issue-42"]
        assert result.branch == "issue-42"
        assert pr.head_branch == "issue-42"
        assert pr.title == "Login fails on Safari (#42)"
        assert pr.body.endswith("Closes #42")
        assert result.issue_updated
        assert result.labels_updated
        assert result.warnings == []

    def test_swaps_working_labels_for_pr_labels(self, lifecycle, spawned, github):
        lifecycle.complete_agent_work("handy-agent-42")

        labels = github.issues[(TRACKING_REPO, 42)].labels
        assert "agent-created" in labels
        assert "agent-assigned" not in labels

    def test_custom_title_body_and_draft(self, lifecycle, spawned):
        result = lifecycle.complete_agent_work("handy-agent-42", title="Fix Safari login",
                                               body="Uses the new cookie flow.", draft=True)

        assert result.pull_request.title == "Fix Safari login"
        assert result.pull_request.body == "Uses the new cookie flow.\n\nCloses #42"
        assert result.pull_request.is_draft

    def test_label_failures_are_warnings(self, lifecycle, spawned, github):
        github.fail_labels = True

        result = lifecycle.complete_agent_work("handy-agent-42")

        assert result.pull_request.number > 0
        assert not result.labels_updated
        assert len(result.warnings) == 2

    def test_requires_worktree_metadata(self, lifecycle, tmux):
        tmux.add_session("handy-agent-5", AgentMetadata(session_id="handy-agent-5", repo=TRACKING_REPO))

        with pytest.raises(PreconditionError, match="worktree"):
            lifecycle.complete_agent_work("handy-agent-5")

    def test_requires_repo(self, lifecycle, tmux):
        tmux.add_session("handy-agent-5", AgentMetadata(session_id="handy-agent-5", worktree_path="/w"))

        with pytest.raises(PreconditionError, match="repository"):
            lifecycle.complete_agent_work("handy-agent-5")


class TestMergedPrCleanup:
    """Tests for check_and_cleanup_merged_pr()."""

    def test_open_pr_left_alone(self, lifecycle, spawned, github, tmux):
        github.add_pr(TRACKING_REPO, 50, "issue-42")

        result = lifecycle.check_and_cleanup_merged_pr("handy-agent-42", 50)

        assert result.state == "open"
        assert not result.cleaned_up
        assert "handy-agent-42" in tmux.sessions

    def test_merged_pr_cleans_up(self, lifecycle, spawned, github, tmux, worktrees):
        github.add_pr(TRACKING_REPO, 50, "issue-42", state="merged")

        result = lifecycle.check_and_cleanup_merged_pr("handy-agent-42", 50)

        assert result.cleaned_up
        assert result.cleanup.worktree_removed
        assert "handy-agent-42" not in tmux.sessions
        assert worktrees.removed == [spawned.worktree.path]
        assert "PR #50 has been merged" in github.comments[-1][2]


class TestDetectPr:
    """Tests for detect_pr_for_agent()."""

    def test_finds_pr_by_branch(self, lifecycle, spawned, github):
        github.add_pr(TRACKING_REPO, 50, "issue-42")
        github.add_pr(TRACKING_REPO, 51, "issue-43")

        assert lifecycle.detect_pr_for_agent("handy-agent-42").number == 50

    def test_none_without_pr(self, lifecycle, spawned):
        assert lifecycle.detect_pr_for_agent("handy-agent-42") is None
