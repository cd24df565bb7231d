"""Tests for deterministic resource allocation."""

import json

import pytest

from handy_agents.allocation import (
    CollisionCheck,
    CollisionKind,
    allocate_port_range,
    branch_name_for_issue,
    container_name_for_issue,
    detect_project_ports,
    issue_number_from_branch,
    issue_number_from_container,
    parse_port_mappings,
    remap_port_to_range,
    remap_ports,
    session_name_for_issue,
    session_name_manual,
)
from handy_agents.models import PortMapping


class TestNaming:
    """Tests for naming conventions."""

    def test_names_for_issue(self):
        assert branch_name_for_issue(42) == "issue-42"
        assert session_name_for_issue(42) == "handy-agent-42"
        assert session_name_manual("scratch") == "handy-agent-manual-scratch"
        assert container_name_for_issue(42) == "handy-sandbox-42"

    def test_branch_parsing(self):
        assert issue_number_from_branch("issue-42") == 42
        assert issue_number_from_branch("issue-42-fix") is None
        assert issue_number_from_branch("main") is None

    def test_container_parsing(self):
        assert issue_number_from_container("handy-sandbox-42") == 42
        assert issue_number_from_container("/handy-sandbox-42") == 42
        assert issue_number_from_container("handy-sandbox-abc") is None
        assert issue_number_from_container("postgres") is None


class TestPortAllocation:
    """Tests for port ranges."""

    def test_slot_zero(self):
        assert allocate_port_range(0) == (30000, 30099)

    def test_issue_42(self):
        assert allocate_port_range(42) == (34200, 34299)

    def test_wraps_modulo_slots(self):
        assert allocate_port_range(142) == allocate_port_range(42)

    @pytest.mark.parametrize("issue", [0, 1, 7, 42, 99, 123, 9999, 54321])
    def test_range_is_deterministic_and_in_bounds(self, issue):
        first, last = allocate_port_range(issue)

        assert (first, last) == allocate_port_range(issue)
        assert last - first == 99
        assert 30000 <= first and last <= 39999

    @pytest.mark.parametrize("issue", [1, 42, 77, 99])
    def test_issues_a_slot_apart_share_a_range(self, issue):
        """n and n + slots * k map to the same range."""
        assert allocate_port_range(issue) == allocate_port_range(issue + 100_000)

    def test_distinct_slots_do_not_overlap(self):
        a = allocate_port_range(1)
        b = allocate_port_range(2)

        assert a[1] < b[0]

    def test_remap_into_range(self):
        assert remap_port_to_range(3000, 42) == 34200
        assert remap_port_to_range(8080, 42) == 34280
        assert remap_port_to_range(5173, 0) == 30073

    def test_remap_ports_drops_collisions(self):
        remapped = remap_ports([PortMapping(3000, 3000), PortMapping(8000, 8000)], 1)

        assert [(p.host_port, p.container_port) for p in remapped] == [(30100, 3000)]

    def test_custom_range(self):
        assert allocate_port_range(3, base=40000, size=10, slots=5) == (40030, 40039)


class TestParsePortMappings:
    """Tests for parse_port_mappings()."""

    def test_forms(self):
        ports = parse_port_mappings(["3000", "8080:80", "5353:53/udp"])

        assert ports == [
            PortMapping(3000, 3000, None),
            PortMapping(8080, 80, None),
            PortMapping(5353, 53, "udp"),
        ]

    def test_skips_garbage(self):
        assert parse_port_mappings(["", "abc", "1:b", "4000"]) == [PortMapping(4000, 4000)]


class TestDetectProjectPorts:
    """Tests for detect_project_ports()."""

    def _ports(self, path):
        return [p.container_port for p in detect_project_ports(path)]

    def test_empty_project(self, tmp_path):
        assert detect_project_ports(tmp_path) == []

    def test_vite_project(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"devDependencies": {"vite": "^5"}}))
        assert self._ports(tmp_path) == [5173, 5174, 24678]

    def test_next_project(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"next": "14", "express": "4"}}))
        assert self._ports(tmp_path) == [3000]

    def test_django_project(self, tmp_path):
        (tmp_path / "manage.py").write_text("")
        assert self._ports(tmp_path) == [8000]

    def test_fastapi_requirements(self, tmp_path):
        (tmp_path / "requirements.txt").write_text("fastapi\nuvicorn\n")
        assert self._ports(tmp_path) == [8000]

    def test_go_and_compose(self, tmp_path):
        (tmp_path / "go.mod").write_text("module example.com/app\n")
        (tmp_path / "docker-compose.yml").write_text(
            "services:\n  db:\n    ports:\n      - \"5432:5432\"\n      - 8080:8080\n"
        )
        assert self._ports(tmp_path) == [8080, 5432]


class TestCollisionCheck:
    """Tests for CollisionCheck.kind."""

    def test_none(self):
        check = CollisionCheck(branch="issue-1", path="/w/issue-1")

        assert check.kind is CollisionKind.NONE
        assert not check.has_collision

    def test_worktree_wins_over_branch(self):
        check = CollisionCheck(branch="issue-1", path="/w/issue-1", worktree_exists=True,
                               branch_exists=True, existing_worktree_path="/elsewhere")

        assert check.kind is CollisionKind.WORKTREE
        assert "/elsewhere" in check.describe()

    def test_branch_only(self):
        check = CollisionCheck(branch="issue-1", path="/w/issue-1", branch_exists=True)

        assert check.kind is CollisionKind.BRANCH_ONLY
        assert "no worktree" in check.describe()

    def test_path_only(self):
        check = CollisionCheck(branch="issue-1", path="/w/issue-1", path_exists=True)
        assert check.kind is CollisionKind.PATH_ONLY
