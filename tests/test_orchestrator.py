"""Tests for AgentOrchestrator against in-memory providers."""

import os
import stat

import pytest

from handy_agents.allocation import CollisionKind
from handy_agents.errors import (
    CollisionError,
    InvalidIssueRefError,
    IssueNotFoundError,
    PreconditionError,
    UnsupportedAgentTypeError,
)
from handy_agents.lifecycle import parse_metadata_comment
from handy_agents.models import AgentMetadata
from handy_agents.orchestrator import (
    AgentOrchestrator,
    RecoveryAction,
    SpawnOptions,
    classify_recovery,
)

from tests.conftest import MACHINE_ID, TRACKING_REPO
from tests.fakes import FakeDocker


def _metadata(session, worktree, machine_id=MACHINE_ID, issue=42):
    return AgentMetadata(
        session_id=session,
        agent_type="claude",
        machine_id=machine_id,
        started_at="2026-01-01T00:00:00+00:00",
        issue_ref=f"{TRACKING_REPO}#{issue}",
        repo=TRACKING_REPO,
        worktree_path=str(worktree),
    )


@pytest.fixture
def issue_42(github):
    return github.add_issue(TRACKING_REPO, 42, "Login fails on Safari")


class TestSpawn:
    """Tests for spawn()."""

    def test_creates_session_worktree_and_metadata(self, orchestrator, tmux, worktrees, config, issue_42):
        result = orchestrator.spawn(f"{TRACKING_REPO}#42")

        assert result.session == "handy-agent-42"
        assert result.worktree.branch == "issue-42"
        assert result.worktree.path == str(config.worktrees_path / "issue-42")
        assert result.issue_title == "Login fails on Safari"
        assert result.warnings == []

        meta = tmux.sessions["handy-agent-42"].metadata
        assert meta.machine_id == MACHINE_ID
        assert meta.issue_ref == "acme/widgets#42"
        assert meta.worktree_path == result.worktree.path
        assert meta.is_complete

        session, command = tmux.commands[0]
        assert session == "handy-agent-42"
        assert command.startswith("claude ")
        assert "acme/widgets#42" in command

    def test_posts_audit_comment_and_labels(self, orchestrator, github, issue_42):
        orchestrator.spawn(f"{TRACKING_REPO}#42")

        repo, number, body = github.comments[0]
        assert (repo, number) == (TRACKING_REPO, 42)
        payload = parse_metadata_comment(body)
        assert payload["session"] == "handy-agent-42"
        assert payload["machine_id"] == MACHINE_ID
        assert payload["status"] == "working"
        assert "agent-assigned" in issue_42.labels

    def test_working_labels_override(self, orchestrator, issue_42):
        orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(working_labels=["staging"]))

        assert issue_42.labels == ["staging"]

    def test_second_spawn_collides(self, orchestrator, tmux, issue_42):
        orchestrator.spawn(f"{TRACKING_REPO}#42")

        with pytest.raises(CollisionError):
            orchestrator.spawn(f"{TRACKING_REPO}#42")

        assert list(tmux.sessions) == ["handy-agent-42"]

    def test_existing_branch_collides_before_side_effects(self, orchestrator, tmux, worktrees, issue_42):
        worktrees.branches.add("issue-42")

        with pytest.raises(CollisionError) as exc:
            orchestrator.spawn(f"{TRACKING_REPO}#42")

        assert exc.value.check.kind is CollisionKind.BRANCH_ONLY
        assert tmux.sessions == {}

    def test_reuse_branch_checks_out_existing_branch(self, orchestrator, tmux, worktrees, config, issue_42):
        worktrees.branches.add("issue-42")

        result = orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(reuse_branch=True))

        assert result.worktree.branch == "issue-42"
        assert result.worktree.path == str(config.worktrees_path / "issue-42")
        assert worktrees.worktrees["issue-42"].base_branch == ""
        assert "handy-agent-42" in tmux.sessions

    def test_reuse_branch_still_refuses_existing_worktree(self, orchestrator, tmux, worktrees, issue_42):
        worktrees.create_worktree("issue-42")

        with pytest.raises(CollisionError):
            orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(reuse_branch=True))

        assert tmux.sessions == {}

    def test_issue_and_ref_validation(self, orchestrator, tmux):
        with pytest.raises(InvalidIssueRefError):
            orchestrator.spawn("widgets#42")
        with pytest.raises(IssueNotFoundError):
            orchestrator.spawn(f"{TRACKING_REPO}#404")
        assert tmux.sessions == {}

    def test_unknown_agent_type(self, orchestrator, issue_42):
        with pytest.raises(UnsupportedAgentTypeError):
            orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(agent_type="copilot"))

    def test_aider_agent(self, orchestrator, tmux, issue_42):
        result = orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(agent_type="Aider"))

        assert result.agent_type == "aider"
        assert tmux.commands[0][1].startswith("aider ")

    def test_tracker_failures_are_warnings(self, orchestrator, github, tmux, issue_42):
        github.fail_comments = True
        github.fail_labels = True

        result = orchestrator.spawn(f"{TRACKING_REPO}#42")

        assert len(result.warnings) == 2
        assert "comment" in result.warnings[0]
        assert "labels" in result.warnings[1]
        assert "handy-agent-42" in tmux.sessions


class TestSandboxedSpawn:
    """Tests for spawning inside a container."""

    def test_ports_remapped_into_issue_range(self, orchestrator, docker, tmux, github, issue_42):
        result = orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(sandbox=True, ports=["3000", "8080"]))

        assert result.sandboxed
        assert result.sandbox.container_name == "handy-sandbox-42"
        assert result.sandbox.port_range == (34200, 34299)
        assert [(p.host_port, p.container_port) for p in result.sandbox.port_mappings] == [
            (34200, 3000), (34280, 8080),
        ]
        assert tmux.commands[0][1].startswith("docker run -it --rm --name handy-sandbox-42")
        assert parse_metadata_comment(github.comments[0][2])["status"] == "working (sandboxed)"

    def test_env_file_is_private(self, orchestrator, docker, config, issue_42, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")

        orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(sandbox=True))

        env_file = config.state_path / "sandbox" / "handy-sandbox-42.env"
        assert "ANTHROPIC_API_KEY=sk-ant-test" in env_file.read_text()
        assert stat.S_IMODE(os.stat(env_file).st_mode) == 0o600
        assert docker.interactive_requests[0].env_file == str(env_file)

    def test_stale_container_replaced(self, orchestrator, docker, issue_42):
        docker.add_container("handy-sandbox-42", state="exited")

        orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(sandbox=True))

        assert docker.removed == ["handy-sandbox-42"]

    def test_docker_unavailable_falls_back(self, config, tmux, worktrees, github, issue_42):
        orchestrator = AgentOrchestrator(config, tmux=tmux, worktrees=worktrees,
                                         docker=FakeDocker(config.sandbox, available=False),
                                         github=github, machine_id=MACHINE_ID)

        result = orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(sandbox=True))

        assert not result.sandboxed
        assert result.sandbox is None
        assert "Docker is not available" in result.warnings[0]
        assert tmux.commands[0][1].startswith("claude ")


class TestClassifyRecovery:
    """Tests for classify_recovery()."""

    @pytest.mark.parametrize("alive,worktree_exists,expected", [
        (True, True, RecoveryAction.RESUME),
        (True, False, RecoveryAction.RESUME),
        (False, True, RecoveryAction.RESTART),
        (False, False, RecoveryAction.CLEANUP),
    ])
    def test_table(self, alive, worktree_exists, expected):
        assert classify_recovery(alive, worktree_exists) is expected


class TestRecover:
    """Tests for recover() and recover_all()."""

    @pytest.fixture
    def sessions(self, tmux, tmp_path):
        live_tree = tmp_path / "wt-1"
        live_tree.mkdir()
        stopped_tree = tmp_path / "wt-2"
        stopped_tree.mkdir()
        tmux.add_session("handy-agent-1", _metadata("handy-agent-1", live_tree, issue=1), alive=True)
        tmux.add_session("handy-agent-2", _metadata("handy-agent-2", stopped_tree, issue=2), alive=False)
        tmux.add_session("handy-agent-3", _metadata("handy-agent-3", tmp_path / "gone", issue=3), alive=False)
        tmux.add_session("handy-agent-4", AgentMetadata(session_id="handy-agent-4", agent_type="claude"))
        tmux.add_session("handy-agent-5", _metadata("handy-agent-5", live_tree, machine_id="other-box", issue=5),
                         alive=False)
        tmux.add_session("handy-master", AgentMetadata(session_id="handy-master", agent_type="master"))
        return tmux

    def test_classifies_every_agent_session(self, orchestrator, sessions):
        actions = {r.session: r.action for r in orchestrator.recover()}

        assert actions == {
            "handy-agent-1": RecoveryAction.RESUME,
            "handy-agent-2": RecoveryAction.RESTART,
            "handy-agent-3": RecoveryAction.CLEANUP,
            "handy-agent-4": RecoveryAction.INSPECT,
            "handy-agent-5": RecoveryAction.NONE,
        }

    def test_inspect_names_missing_fields(self, orchestrator, sessions):
        inspect = next(r for r in orchestrator.recover() if r.action is RecoveryAction.INSPECT)

        assert "machine_id" in inspect.reason
        assert "worktree_path" in inspect.reason

    def test_recover_all_without_flags_changes_nothing(self, orchestrator, sessions):
        results = orchestrator.recover_all()

        assert not any(r.performed for r in results)
        assert sessions.commands == []
        assert sessions.killed == []

    def test_recover_all_with_flags(self, orchestrator, sessions):
        results = {r.session: r for r in orchestrator.recover_all(auto_restart=True, auto_cleanup=True)}

        assert results["handy-agent-2"].performed
        assert results["handy-agent-3"].performed
        assert not results["handy-agent-4"].performed
        assert not results["handy-agent-5"].performed
        assert sessions.commands[0][0] == "handy-agent-2"
        assert sessions.killed == ["handy-agent-3"]
        assert "handy-agent-5" in sessions.sessions

    def test_restart_refuses_remote_session(self, orchestrator, sessions):
        with pytest.raises(PreconditionError):
            orchestrator.restart_agent("handy-agent-5")

    def test_restart_refuses_incomplete_metadata(self, orchestrator, sessions):
        with pytest.raises(PreconditionError):
            orchestrator.restart_agent("handy-agent-4")

    def test_restart_plain_session_sends_agent_command(self, orchestrator, sessions, docker):
        orchestrator.restart_agent("handy-agent-2")

        assert sessions.commands[0][0] == "handy-agent-2"
        assert sessions.commands[0][1].startswith("claude ")
        assert docker.interactive_requests == []


class TestRestartSandboxed:
    """Tests for restart_agent() on sessions spawned in a sandbox."""

    @pytest.fixture
    def sandboxed_session(self, tmux, tmp_path):
        worktree = tmp_path / "wt-7"
        worktree.mkdir()
        meta = _metadata("handy-agent-7", worktree, issue=7)
        meta.container_name = "handy-sandbox-7"
        tmux.add_session("handy-agent-7", meta, alive=False)
        return worktree

    def test_spawn_records_container_in_metadata(self, orchestrator, tmux, issue_42):
        orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(sandbox=True))

        assert tmux.sessions["handy-agent-42"].metadata.container_name == "handy-sandbox-42"

    def test_plain_spawn_records_no_container(self, orchestrator, tmux, issue_42):
        orchestrator.spawn(f"{TRACKING_REPO}#42", SpawnOptions(sandbox=False))

        assert tmux.sessions["handy-agent-42"].metadata.container_name is None

    def test_restart_relaunches_in_container(self, orchestrator, tmux, docker, sandboxed_session):
        docker.add_container("handy-sandbox-7", state="exited")

        orchestrator.restart_agent("handy-agent-7")

        session, command = tmux.commands[0]
        assert session == "handy-agent-7"
        assert command.startswith("docker run -it --rm --name handy-sandbox-7")
        assert len(docker.interactive_requests) == 1
        request = docker.interactive_requests[0]
        assert request.issue_number == 7
        assert request.worktree_path == str(sandboxed_session)
        assert docker.removed == ["handy-sandbox-7"]

    def test_restart_requires_docker(self, config, tmux, worktrees, github, sandboxed_session):
        orchestrator = AgentOrchestrator(config, tmux=tmux, worktrees=worktrees,
                                         docker=FakeDocker(config.sandbox, available=False),
                                         github=github, machine_id=MACHINE_ID)

        with pytest.raises(PreconditionError, match="Docker is not available"):
            orchestrator.restart_agent("handy-agent-7")

        assert tmux.commands == []


class TestStatuses:
    """Tests for list_agent_statuses()."""

    def test_local_and_remote_split(self, orchestrator, tmux, tmp_path):
        tmux.add_session("handy-agent-1", _metadata("handy-agent-1", tmp_path, issue=1), attached=True)
        tmux.add_session("handy-agent-2", _metadata("handy-agent-2", tmp_path, machine_id="other", issue=2))
        tmux.add_session("handy-master")

        local = orchestrator.list_local_agent_statuses()
        remote = orchestrator.list_remote_agent_statuses()

        assert [s.session for s in local] == ["handy-agent-1"]
        assert local[0].is_attached
        assert local[0].issue_number == 1
        assert [s.session for s in remote] == ["handy-agent-2"]


class TestOrphanCleanup:
    """Tests for cleanup_orphan_sandboxes()."""

    def test_removes_containers_without_sessions(self, orchestrator, tmux, docker, tmp_path):
        tmux.add_session("handy-agent-7", _metadata("handy-agent-7", tmp_path, issue=7))
        docker.add_container("handy-sandbox-7")
        docker.add_container("handy-sandbox-9", state="exited")

        result = orchestrator.cleanup_orphan_sandboxes()

        assert result.found == 1
        assert result.removed == 1
        assert result.containers == ["handy-sandbox-9"]
        assert docker.removed == ["handy-sandbox-9"]

    def test_session_name_counts_without_metadata(self, orchestrator, tmux, docker):
        tmux.add_session("handy-agent-9")
        docker.add_container("handy-sandbox-9")

        assert orchestrator.cleanup_orphan_sandboxes().found == 0

    def test_remove_failure_reported(self, orchestrator, docker):
        docker.add_container("handy-sandbox-9")
        docker.fail_remove.add("handy-sandbox-9")

        result = orchestrator.cleanup_orphan_sandboxes()

        assert result.found == 1
        assert result.removed == 0
        assert "device busy" in result.errors[0]

    def test_docker_unavailable(self, config, tmux, worktrees, github):
        docker = FakeDocker(config.sandbox, available=False)
        docker.add_container("handy-sandbox-9")
        orchestrator = AgentOrchestrator(config, tmux=tmux, worktrees=worktrees, docker=docker, github=github)

        assert orchestrator.cleanup_orphan_sandboxes().found == 0


class TestCleanup:
    """Tests for cleanup()."""

    def test_kills_session_and_removes_worktree(self, orchestrator, tmux, worktrees, docker, issue_42):
        spawned = orchestrator.spawn(f"{TRACKING_REPO}#42")
        docker.add_container("handy-sandbox-42")

        result = orchestrator.cleanup("handy-agent-42", remove_worktree=True, delete_branch=True)

        assert result.session_killed
        assert result.container_removed
        assert result.worktree_removed
        assert result.branch_deleted
        assert worktrees.removed == [spawned.worktree.path]
        assert "issue-42" not in worktrees.branches

    def test_keeps_worktree_by_default(self, orchestrator, worktrees, issue_42):
        orchestrator.spawn(f"{TRACKING_REPO}#42")

        result = orchestrator.cleanup("handy-agent-42")

        assert result.session_killed
        assert not result.worktree_removed
        assert worktrees.removed == []


class TestAsync:
    """Tests for the async wrappers."""

    @pytest.mark.asyncio
    async def test_spawn_async(self, orchestrator, issue_42):
        result = await orchestrator.spawn_async(f"{TRACKING_REPO}#42")

        assert result.session == "handy-agent-42"

    @pytest.mark.asyncio
    async def test_recover_async(self, orchestrator, tmux, tmp_path):
        tmux.add_session("handy-agent-1", _metadata("handy-agent-1", tmp_path, issue=1))

        recovered = await orchestrator.recover_async()

        assert recovered[0].action is RecoveryAction.RESUME
