"""Tests for EpicService against in-memory providers."""

import pytest

from handy_agents.epic.body import extract_phases
from handy_agents.epic.models import EpicConfig, Phase, PhaseStatus
from handy_agents.epic.service import EpicService
from handy_agents.epic.store import EpicStore
from handy_agents.errors import IssueNotFoundError, NotAnEpicError, PreconditionError

from tests.conftest import TRACKING_REPO

# FakeGitHub numbers new issues from 1001
EPIC = 1001


@pytest.fixture
def service(config, orchestrator, github, tracker):
    return EpicService(
        config,
        orchestrator=orchestrator,
        github=github,
        store=EpicStore(config.epic_store_path, lock_timeout=2),
        tracker=tracker,
    )


@pytest.fixture
def epic(service):
    return service.create_epic(EpicConfig(
        title="Auth rewrite",
        repo=TRACKING_REPO,
        goal="Replace sessions with tokens",
        phases=[
            Phase(number=0, name="Schema", description="New tables"),
            Phase(number=0, name="API", description="Endpoints", approach="agent-assisted"),
            Phase(number=0, name="Docs", description="Write it up"),
        ],
        success_metrics=["No session table"],
    ))


class TestCreateEpic:
    """Tests for create_epic()."""

    def test_creates_prefixed_labeled_issue(self, epic, github):
        issue = github.issues[(TRACKING_REPO, EPIC)]

        assert epic.epic_number == EPIC
        assert issue.title == "[EPIC] Auth rewrite"
        assert "epic" in issue.labels
        assert [p.number for p in epic.phases] == [1, 2, 3]
        assert [p.name for p in extract_phases(issue.body)] == ["Schema", "API", "Docs"]

    def test_cached(self, epic, service):
        assert service.store.get(TRACKING_REPO, EPIC).title == "Auth rewrite"


class TestLoadEpic:
    """Tests for load_epic()."""

    def test_loads_phases_from_body(self, epic, service):
        loaded = service.load_epic(TRACKING_REPO, EPIC)

        assert loaded.title == "Auth rewrite"
        assert loaded.work_repo == TRACKING_REPO
        assert loaded.get_phase(2).approach == "agent-assisted"

    def test_label_alone_marks_an_epic(self, service, github):
        github.add_issue(TRACKING_REPO, 5, "Big thing", body="## Phases\n### Phase 1: A\n", labels=["epic"])

        assert service.load_epic(TRACKING_REPO, 5).phases[0].name == "A"

    def test_plain_issue_rejected(self, service, github):
        github.add_issue(TRACKING_REPO, 5, "Small thing")

        with pytest.raises(NotAnEpicError):
            service.load_epic(TRACKING_REPO, 5)

    def test_missing_issue(self, service):
        with pytest.raises(IssueNotFoundError):
            service.load_epic(TRACKING_REPO, 404)


class TestStartOrchestration:
    """Tests for start_orchestration()."""

    def test_creates_one_sub_issue_per_phase(self, service, epic, github):
        result = service.start_orchestration(epic, phases=[1, 2])

        assert result.started_phases == [1, 2]
        assert [s.issue_number for s in result.sub_issues] == [1002, 1003]
        assert [s.agent_type for s in result.sub_issues] == ["manual", "claude"]
        sub = github.issues[(TRACKING_REPO, 1003)]
        assert sub.title == "Phase 2: API"
        assert "**Epic**: #1001" in sub.body
        assert "**Phase**: 2" in sub.body
        assert sub.labels == ["todo"]

    def test_defaults_to_first_phase(self, service, epic):
        assert service.start_orchestration(epic).started_phases == [1]

    def test_second_run_creates_nothing(self, service, epic, github):
        service.start_orchestration(epic, phases=[1, 2])
        issue_count = len(github.issues)

        result = service.start_orchestration(epic, phases=[1, 2])

        assert len(github.issues) == issue_count
        assert [s.issue_number for s in result.sub_issues] == [1002, 1003]
        assert any("already has issue #1002" in w for w in result.warnings)

    def test_unknown_phase_is_warning(self, service, epic):
        result = service.start_orchestration(epic, phases=[9])

        assert result.sub_issues == []
        assert "Phase 9 does not exist" in result.warnings[0]

    def test_label_failure_is_warning(self, service, epic, github):
        github.fail_labels = True

        result = service.start_orchestration(epic, phases=[1])

        assert result.sub_issues[0].issue_number == 1002
        assert "Failed to add labels" in result.warnings[0]

    def test_spawns_only_non_manual_phases(self, service, epic, github, tmux, tracker):
        result = service.start_orchestration(epic, phases=[1, 2], auto_spawn_agents=True)

        assert [a.issue_number for a in result.spawned_agents] == [1003]
        assert result.spawned_agents[0].session_name == "handy-agent-1003"
        assert "handy-agent-1002" not in tmux.sessions
        assert "staging" in github.issues[(TRACKING_REPO, 1003)].labels
        assert tracker.find_by_issue(TRACKING_REPO, 1003).session_name == "handy-agent-1003"

    def test_rerun_does_not_respawn_worked_issue(self, service, epic, tmux):
        service.start_orchestration(epic, phases=[2], auto_spawn_agents=True)

        result = service.start_orchestration(epic, phases=[2], auto_spawn_agents=True)

        assert result.spawned_agents == []
        assert not any("Failed to spawn" in w for w in result.warnings)

    def test_invalid_worktree_base(self, service, epic, tmp_path):
        result = service.start_orchestration(epic, phases=[2], auto_spawn_agents=True,
                                             worktree_base=str(tmp_path / "nowhere"))

        assert result.spawned_agents == []
        assert any("not a valid git repository" in w for w in result.warnings)

    def test_spawn_failure_is_warning(self, service, epic, tmux):
        tmux.add_session("handy-agent-1002")

        result = service.start_orchestration(epic, phases=[2], auto_spawn_agents=True)

        assert result.spawned_agents == []
        assert any("Failed to spawn agent for issue #1002" in w for w in result.warnings)


class TestRecovery:
    """Tests for load_epic_for_recovery() and the GitHub status sync."""

    @pytest.fixture
    def started(self, service, epic, github):
        service.start_orchestration(epic, phases=[1, 2])
        github.issues[(TRACKING_REPO, 1002)].state = "closed"
        github.add_pr(TRACKING_REPO, 60, "issue-1003")
        return epic

    def test_rebuilds_from_tracker(self, service, started):
        info = service.load_epic_for_recovery(TRACKING_REPO, EPIC)

        statuses = {p.number: p.status for p in info.epic.phases}
        assert statuses == {1: PhaseStatus.COMPLETED, 2: PhaseStatus.READY, 3: PhaseStatus.NOT_STARTED}
        assert (info.progress.completed, info.progress.total, info.progress.percentage) == (1, 2, 50)
        assert info.phases_without_issues == [3]
        assert [s.issue_number for s in info.ready_for_agents] == [1003]
        assert info.in_progress == []
        assert info.sub_issues[1].pr_number == 60

    def test_ignores_cache(self, service, started):
        service.store.remove(TRACKING_REPO, EPIC)

        info = service.load_epic_for_recovery(TRACKING_REPO, EPIC)

        assert len(info.sub_issues) == 2

    def test_working_label_counts_as_in_progress(self, service, started, github):
        github.issues[(TRACKING_REPO, 1003)].labels.append("staging")

        info = service.load_epic_for_recovery(TRACKING_REPO, EPIC)

        assert [s.issue_number for s in info.in_progress] == [1003]
        assert info.ready_for_agents == []

    def test_sync_writes_status_and_progress(self, service, started, github):
        result = service.update_epic_phase_status_on_github(TRACKING_REPO, EPIC)

        body = github.issues[(TRACKING_REPO, EPIC)].body
        phases = {p.number: p.status for p in extract_phases(body)}
        assert result.body_updated
        assert result.changed_phases == [1, 2]
        assert phases == {1: PhaseStatus.COMPLETED, 2: PhaseStatus.READY, 3: PhaseStatus.NOT_STARTED}
        assert "1/2 sub-issues completed (50%)" in body

    def test_sync_is_idempotent(self, service, started, github):
        service.update_epic_phase_status_on_github(TRACKING_REPO, EPIC)
        updates = len(github.body_updates)

        result = service.update_epic_phase_status_on_github(TRACKING_REPO, EPIC)

        assert not result.body_updated
        assert result.changed_phases == []
        assert len(github.body_updates) == updates

    def test_phase_status_view(self, service, started):
        epic = service.load_epic(TRACKING_REPO, EPIC)

        phases = service.get_epic_phase_status(epic)

        assert phases[1].status is PhaseStatus.READY
        assert epic.phases[1].status is PhaseStatus.NOT_STARTED

    def test_update_progress(self, service, started, github):
        progress = service.update_epic_progress(TRACKING_REPO, EPIC)

        assert progress.percentage == 50
        assert "1/2 sub-issues completed (50%)" in github.issues[(TRACKING_REPO, EPIC)].body


class TestActiveEpic:
    """Tests for the active epic operations."""

    def test_none_active(self, service):
        assert service.get_active_epic() is None
        assert service.sync_active_epic() is None
        assert service.clear_active_epic() is None

    def test_activate_rebuilds_from_tracker(self, service, epic, github):
        service.start_orchestration(epic, phases=[1, 2])
        github.issues[(TRACKING_REPO, 1002)].state = "closed"

        active = service.set_active_epic(TRACKING_REPO, EPIC)

        assert active.key == f"{TRACKING_REPO}#{EPIC}"
        assert [s.issue_number for s in active.epic.sub_issues] == [1002, 1003]
        assert (active.progress.completed, active.progress.total) == (1, 2)
        assert service.get_active_epic().synced_at is not None

    def test_activate_not_an_epic(self, service, github):
        github.add_issue(TRACKING_REPO, 5, "Small thing")

        with pytest.raises(NotAnEpicError):
            service.set_active_epic(TRACKING_REPO, 5)

        assert service.get_active_epic() is None

    def test_sync_refreshes_and_keeps_agents(self, service, epic, github):
        service.start_orchestration(epic, phases=[1])
        service.set_active_epic(TRACKING_REPO, EPIC)
        service.update_epic_sub_issue_agent(1002, "handy-agent-1002", "claude")
        service.start_orchestration(epic, phases=[2])

        synced = service.sync_active_epic()

        assert [s.issue_number for s in synced.epic.sub_issues] == [1002, 1003]
        assert synced.progress.total == 2
        assert synced.agents[1002].session_name == "handy-agent-1002"
        assert service.get_active_epic().agents[1002].agent_type == "claude"

    def test_sync_drops_agents_of_closed_sub_issues(self, service, epic, github):
        service.start_orchestration(epic, phases=[1])
        service.set_active_epic(TRACKING_REPO, EPIC)
        service.update_epic_sub_issue_agent(1002, "handy-agent-1002")
        github.issues[(TRACKING_REPO, 1002)].state = "closed"

        synced = service.sync_active_epic()

        assert synced.agents == {}
        assert synced.progress.completed == 1

    def test_reactivate_keeps_agents(self, service, epic):
        service.start_orchestration(epic, phases=[1])
        service.set_active_epic(TRACKING_REPO, EPIC)
        service.update_epic_sub_issue_agent(1002, "handy-agent-1002")

        service.set_active_epic(TRACKING_REPO, EPIC)

        assert service.get_active_epic().agents[1002].session_name == "handy-agent-1002"

    def test_update_agent_requires_active_epic(self, service):
        with pytest.raises(PreconditionError, match="No active epic"):
            service.update_epic_sub_issue_agent(1002, "handy-agent-1002")

    def test_update_agent_rejects_unknown_issue(self, service, epic):
        service.set_active_epic(TRACKING_REPO, EPIC)

        with pytest.raises(PreconditionError, match="not a sub-issue"):
            service.update_epic_sub_issue_agent(42, "handy-agent-42")

    def test_clear_agent(self, service, epic):
        service.start_orchestration(epic, phases=[1])
        service.set_active_epic(TRACKING_REPO, EPIC)
        service.update_epic_sub_issue_agent(1002, "handy-agent-1002")

        active = service.update_epic_sub_issue_agent(1002, None)

        assert active.agents == {}

    def test_spawned_agents_recorded_on_active_epic(self, service, epic):
        service.set_active_epic(TRACKING_REPO, EPIC)

        service.start_orchestration(epic, phases=[1, 2], auto_spawn_agents=True)

        agents = service.get_active_epic().agents
        assert list(agents) == [1003]
        assert agents[1003].session_name == "handy-agent-1003"
        assert agents[1003].agent_type == "claude"

    def test_spawn_for_inactive_epic_records_nothing(self, service, epic, github):
        github.add_issue(TRACKING_REPO, 5, "[EPIC] Other", body="## Phases\n### Phase 1: A\n")
        service.set_active_epic(TRACKING_REPO, 5)

        service.start_orchestration(epic, phases=[2], auto_spawn_agents=True)

        assert service.get_active_epic().agents == {}

    def test_deactivate_and_archive(self, service, epic):
        service.set_active_epic(TRACKING_REPO, EPIC)

        cleared = service.clear_active_epic(archive=True)

        assert cleared.key == f"{TRACKING_REPO}#{EPIC}"
        assert service.get_active_epic() is None
        assert [h.key for h in service.get_epic_history()] == [cleared.key]

    def test_list_cached_epics(self, service, epic, github):
        github.add_issue(TRACKING_REPO, 5, "[EPIC] Other", body="## Phases\n### Phase 1: A\n")
        service.load_epic(TRACKING_REPO, 5)

        keys = [e.key for e in service.list_cached_epics()]

        assert sorted(keys) == [f"{TRACKING_REPO}#{EPIC}", f"{TRACKING_REPO}#5"]

    def test_cached_epic_and_forget(self, service, epic):
        assert service.get_cached_epic(TRACKING_REPO, EPIC).title == "Auth rewrite"

        assert service.forget_epic(TRACKING_REPO, EPIC).epic_number == EPIC
        assert service.get_cached_epic(TRACKING_REPO, EPIC) is None
        assert service.forget_epic(TRACKING_REPO, EPIC) is None

    def test_forget_refuses_active_epic(self, service, epic):
        service.set_active_epic(TRACKING_REPO, EPIC)

        with pytest.raises(PreconditionError, match="deactivate it first"):
            service.forget_epic(TRACKING_REPO, EPIC)


class TestMarkPhaseStatus:
    """Tests for mark_phase_status()."""

    def test_rewrites_status_line(self, service, epic, github):
        service.mark_phase_status(TRACKING_REPO, EPIC, 3, PhaseStatus.SKIPPED)

        phases = extract_phases(github.issues[(TRACKING_REPO, EPIC)].body)
        assert phases[2].status is PhaseStatus.SKIPPED
        assert phases[0].status is PhaseStatus.NOT_STARTED

    def test_unknown_phase(self, service, epic):
        with pytest.raises(PreconditionError, match="Phase 7 does not exist"):
            service.mark_phase_status(TRACKING_REPO, EPIC, 7, PhaseStatus.COMPLETED)


class TestAsync:
    """Tests for the async wrappers."""

    @pytest.mark.asyncio
    async def test_recovery_async(self, service, epic):
        info = await service.load_epic_for_recovery_async(TRACKING_REPO, EPIC)

        assert info.epic.epic_number == EPIC

    @pytest.mark.asyncio
    async def test_sync_active_async(self, service, epic):
        service.set_active_epic(TRACKING_REPO, EPIC)

        synced = await service.sync_active_epic_async()

        assert synced.epic.epic_number == EPIC
