"""Tests for PipelineTracker."""

import pytest

from handy_agents.errors import CollisionError, IssueNotFoundError, PipelineItemNotFoundError, PreconditionError
from handy_agents.models import AgentMetadata
from handy_agents.orchestrator import AgentStatus
from handy_agents.pipeline.models import (
    PipelineItem,
    PipelineState,
    PipelineStatus,
    PrPipelineStatus,
)
from handy_agents.pipeline.tracker import (
    PipelineTracker,
    aggregate_pipeline_state,
    detect_pr_for_item,
    sync_pr_status,
)
from handy_agents.providers.github import GitHubPullRequest, ReviewSummary

from tests.conftest import MACHINE_ID, TRACKING_REPO


@pytest.fixture
def issue_7(github):
    return github.add_issue(TRACKING_REPO, 7, "Add dark mode", labels=["agent-todo"])


def _status(session, issue_number, repo=TRACKING_REPO, machine_id=MACHINE_ID, worktree="/w"):
    return AgentStatus(
        session=session, issue_ref=f"{repo}#{issue_number}", repo=repo, issue_number=issue_number,
        worktree=worktree, agent_type="claude", machine_id=machine_id, started_at=None,
        is_attached=False, is_local=True, is_alive=True,
    )


def _queued(issue_number, repo=TRACKING_REPO):
    return PipelineItem(id=f"{repo.replace('/', '-')}-{issue_number}-1", tracking_repo=repo,
                        work_repo=repo, issue_number=issue_number)


class TestAggregate:
    """Tests for aggregate_pipeline_state()."""

    def test_queued_item_promoted(self):
        state = PipelineState()
        state.add_item(_queued(7))

        items = aggregate_pipeline_state(state, [_status("handy-agent-7", 7, worktree="/w/issue-7")])

        assert items[0].status is PipelineStatus.IN_PROGRESS
        assert items[0].session_name == "handy-agent-7"
        assert items[0].branch_name == "issue-7"

    def test_later_states_kept(self):
        state = PipelineState()
        item = _queued(7)
        item.start_work("old", "/old", "issue-7", "box")
        item.link_pr(50, "u", "open")
        state.add_item(item)

        aggregate_pipeline_state(state, [_status("handy-agent-7", 7, worktree="/new")])

        assert item.status is PipelineStatus.PR_REVIEW
        assert item.session_name == "handy-agent-7"
        assert item.worktree_path == "/new"

    def test_session_without_repo_uses_work_repo(self):
        state = PipelineState()
        state.add_item(_queued(7, repo="acme/app"))
        session = _status("handy-agent-7", 7)
        session.repo = None

        aggregate_pipeline_state(state, [session], work_repo="acme/app")

        assert state.items["acme-app-7-1"].status is PipelineStatus.IN_PROGRESS

    def test_unmatched_sessions_ignored(self):
        state = PipelineState()
        state.add_item(_queued(7))

        aggregate_pipeline_state(state, [_status("handy-agent-8", 8)])

        assert state.items[next(iter(state.items))].status is PipelineStatus.QUEUED


class TestDetectPrForItem:
    """Tests for detect_pr_for_item()."""

    def test_exact_branch_only(self):
        item = _queued(7)
        item.branch_name = "issue-7"
        prs = [
            GitHubPullRequest(number=1, title="", state="open", head_branch="issue-70"),
            GitHubPullRequest(number=2, title="", state="open", head_branch="issue-7"),
        ]

        assert detect_pr_for_item(item, prs).number == 2

    def test_no_branch(self):
        assert detect_pr_for_item(_queued(7), []) is None


class TestSyncPrStatus:
    """Tests for sync_pr_status()."""

    def test_merged_pr_completes_item(self, github):
        item = _queued(7)
        item.start_work("handy-agent-7", "/w/issue-7", "issue-7", MACHINE_ID)
        item.link_pr(50, f"https://github.com/{TRACKING_REPO}/pull/50", "open")
        github.add_pr(TRACKING_REPO, 50, "issue-7", state="merged")

        assert sync_pr_status(item, github)

        assert item.status is PipelineStatus.COMPLETED
        assert item.pr_status is PrPipelineStatus.MERGED
        assert item.completed_at is not None

    def test_item_without_pr_untouched(self, github):
        item = _queued(7)

        assert not sync_pr_status(item, github)
        assert item.status is PipelineStatus.QUEUED

    def test_status_for_another_pr_ignored(self, github):
        item = _queued(7)
        item.start_work("handy-agent-7", "/w/issue-7", "issue-7", MACHINE_ID)
        item.link_pr(50, "u", "open")
        github.add_pr(TRACKING_REPO, 51, "issue-7", state="merged")

        assert not sync_pr_status(item, github, fetched=github.get_pr_status(TRACKING_REPO, 51))
        assert item.status is PipelineStatus.PR_REVIEW


class TestAssign:
    """Tests for assign_issue_to_agent()."""

    def test_records_in_progress_item(self, tracker, tmux, issue_7):
        result = tracker.assign_issue_to_agent(7)

        item = result.item
        assert item.status is PipelineStatus.IN_PROGRESS
        assert item.session_name == "handy-agent-7"
        assert item.branch_name == "issue-7"
        assert item.machine_id == MACHINE_ID
        assert item.issue_title == "Add dark mode"
        assert tracker.get_item(item.id).status is PipelineStatus.IN_PROGRESS
        assert "handy-agent-7" in tmux.sessions

    def test_removes_todo_label(self, tracker, issue_7):
        tracker.assign_issue_to_agent(7)

        assert "agent-todo" not in issue_7.labels
        assert "agent-assigned" in issue_7.labels

    def test_separate_work_repo(self, tracker, issue_7):
        item = tracker.assign_issue_to_agent(7, work_repo="acme/app").item

        assert item.tracking_repo == TRACKING_REPO
        assert item.work_repo == "acme/app"
        assert item.id.startswith("acme-app-7-")

    def test_missing_issue_records_nothing(self, tracker):
        with pytest.raises(IssueNotFoundError):
            tracker.assign_issue_to_agent(404)

        assert tracker.store.read().items == {}

    def test_collision_records_nothing(self, tracker, issue_7):
        tracker.assign_issue_to_agent(7)

        with pytest.raises(CollisionError):
            tracker.assign_issue_to_agent(7)

        assert len(tracker.store.read().items) == 1

    def test_requires_tracking_repo(self, config, orchestrator, store):
        config.github.repo = ""
        tracker = PipelineTracker(config, orchestrator=orchestrator, store=store)

        with pytest.raises(PreconditionError):
            tracker.assign_issue_to_agent(7)


class TestSkip:
    """Tests for skip_issue()."""

    def test_relabels_comments_and_records_history(self, tracker, github, issue_7):
        item = tracker.skip_issue(TRACKING_REPO, 7, "Out of scope")

        assert item.status is PipelineStatus.SKIPPED
        assert issue_7.labels == ["agent-skipped"]
        assert "**Reason:** Out of scope" in github.comments[-1][2]
        assert tracker.get_history()[0].issue_number == 7
        assert tracker.store.read().items == {}

    def test_no_comment_without_reason(self, tracker, github, issue_7):
        tracker.skip_issue(TRACKING_REPO, 7)

        assert github.comments == []


class TestListAndSummary:
    """Tests for list_pipeline_items() and get_pipeline_summary()."""

    def test_live_session_promotes_stored_item(self, tracker, tmux, store):
        with store.transaction() as state:
            state.add_item(_queued(7))
        tmux.add_session("handy-agent-7", AgentMetadata(
            session_id="handy-agent-7", agent_type="claude", machine_id=MACHINE_ID,
            issue_ref=f"{TRACKING_REPO}#7", repo=TRACKING_REPO, worktree_path="/w/issue-7",
        ))

        items = tracker.list_pipeline_items()

        assert items[0].status is PipelineStatus.IN_PROGRESS
        assert store.read().items[items[0].id].session_name == "handy-agent-7"

    def test_session_failure_degrades(self, tracker, tmux, store):
        with store.transaction() as state:
            state.add_item(_queued(7))
        tmux.fail_listing = True

        items = tracker.list_pipeline_items()

        assert items[0].status is PipelineStatus.QUEUED

    def test_active_only(self, tracker, store):
        working = _queued(7)
        working.start_work("handy-agent-7", "/w/issue-7", "issue-7", MACHINE_ID)
        with store.transaction() as state:
            state.add_item(_queued(8))
            state.add_item(working)

        assert len(tracker.list_pipeline_items()) == 2
        assert [i.issue_number for i in tracker.list_pipeline_items(active_only=True)] == [7]

    def test_summary(self, tracker, issue_7, github):
        github.add_issue(TRACKING_REPO, 8, "Other")
        tracker.assign_issue_to_agent(7)
        tracker.skip_issue(TRACKING_REPO, 8)

        summary = tracker.get_pipeline_summary()

        assert summary.total == 1
        assert summary.in_progress == 1


class TestPullRequestLinkage:
    """Tests for PR detection, linking and syncing."""

    @pytest.fixture
    def assigned(self, tracker, issue_7):
        return tracker.assign_issue_to_agent(7).item

    def test_detect_and_link(self, tracker, github, assigned):
        github.add_pr(TRACKING_REPO, 50, "issue-7")
        github.add_pr(TRACKING_REPO, 51, "feature-x")

        linked = tracker.detect_and_link_prs(TRACKING_REPO)

        assert [i.pr_number for i in linked] == [50]
        stored = tracker.get_item(assigned.id)
        assert stored.status is PipelineStatus.PR_REVIEW
        assert tracker.find_by_pr(TRACKING_REPO, 50).id == assigned.id

    def test_detect_skips_linked_items(self, tracker, github, assigned):
        github.add_pr(TRACKING_REPO, 50, "issue-7")
        tracker.detect_and_link_prs(TRACKING_REPO)

        assert tracker.detect_and_link_prs(TRACKING_REPO) == []

    def test_manual_link(self, tracker, github, assigned):
        github.add_pr(TRACKING_REPO, 60, "custom-branch", is_draft=True)

        item = tracker.link_pr_to_pipeline_item(assigned.id, 60)

        assert item.pr_number == 60
        assert item.pr_status is PrPipelineStatus.DRAFT

    def test_manual_link_unknown_item(self, tracker):
        with pytest.raises(PipelineItemNotFoundError):
            tracker.link_pr_to_pipeline_item("nope", 60)

    def test_sync_updates_reviews(self, tracker, github, assigned):
        github.add_pr(TRACKING_REPO, 50, "issue-7", reviews=ReviewSummary(approved=1))
        tracker.link_pr_to_pipeline_item(assigned.id, 50)

        updated = tracker.sync_all_pr_statuses()

        assert updated[0].pr_status is PrPipelineStatus.APPROVED
        assert tracker.get_item(assigned.id).pr_status is PrPipelineStatus.APPROVED

    def test_sync_archives_merged(self, tracker, github, assigned):
        pr = github.add_pr(TRACKING_REPO, 50, "issue-7")
        tracker.link_pr_to_pipeline_item(assigned.id, 50)
        pr.state = "merged"

        updated = tracker.sync_all_pr_statuses()

        assert updated[0].status is PipelineStatus.COMPLETED
        assert tracker.get_item(assigned.id) is None
        assert tracker.get_history()[0].id == assigned.id

    def test_sync_leaves_unfetchable_items(self, tracker, github, assigned):
        github.add_pr(TRACKING_REPO, 50, "issue-7")
        tracker.link_pr_to_pipeline_item(assigned.id, 50)
        del github.prs[(TRACKING_REPO, 50)]

        assert tracker.sync_all_pr_statuses() == []
        assert tracker.get_item(assigned.id).status is PipelineStatus.PR_REVIEW

    def test_update_single_item(self, tracker, github, assigned):
        assert tracker.update_pipeline_item_pr_status(assigned.id) is None

        github.add_pr(TRACKING_REPO, 50, "issue-7")
        tracker.link_pr_to_pipeline_item(assigned.id, 50)
        github.reviews[(TRACKING_REPO, 50)] = ReviewSummary(changes_requested=1)

        item = tracker.update_pipeline_item_pr_status(assigned.id)

        assert item.pr_status is PrPipelineStatus.NEEDS_REVIEW

    def test_update_single_item_merged(self, tracker, github, assigned):
        pr = github.add_pr(TRACKING_REPO, 50, "issue-7")
        tracker.link_pr_to_pipeline_item(assigned.id, 50)
        pr.state = "merged"

        item = tracker.update_pipeline_item_pr_status(assigned.id)

        assert item.status is PipelineStatus.COMPLETED
        assert item.completed_at is not None


class TestMaintenance:
    """Tests for archive, remove and fail."""

    def test_archive_active_item_not_in_history(self, tracker, store):
        with store.transaction() as state:
            state.add_item(_queued(7))

        archived = tracker.archive_item(_queued(7).id)

        assert archived.issue_number == 7
        assert tracker.get_history() == []

    def test_archive_unknown(self, tracker):
        assert tracker.archive_item("nope") is None

    def test_fail_then_archive(self, tracker, store):
        item_id = _queued(7).id
        with store.transaction() as state:
            state.add_item(_queued(7))

        tracker.fail_item(item_id, "agent crashed")
        tracker.archive_completed()

        assert tracker.get_history()[0].error == "agent crashed"

    def test_remove(self, tracker, store):
        with store.transaction() as state:
            state.add_item(_queued(7))

        assert tracker.remove_item(_queued(7).id).issue_number == 7
        assert tracker.remove_item(_queued(7).id) is None


class TestAsync:
    """Tests for the async wrappers."""

    @pytest.mark.asyncio
    async def test_list_async(self, tracker, store):
        with store.transaction() as state:
            state.add_item(_queued(7))

        items = await tracker.list_pipeline_items_async()

        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_sync_async_empty(self, tracker):
        assert await tracker.sync_all_pr_statuses_async() == []
