"""
Deterministic resource allocation.

Every per-issue resource name is a pure function of the issue number:
- branch issue-{n}, session handy-agent-{n}, container handy-sandbox-{n}
- host port range slot = n mod slots

No registry is consulted, so independently spawned agents for different
issues never collide. Issue numbers congruent modulo the slot count share a
port range and cannot run sandboxed at the same time.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from handy_agents.models import PortMapping

logger = logging.getLogger(__name__)

PORT_RANGE_BASE = 30000
PORT_RANGE_SIZE = 100
PORT_SLOTS = 100

BRANCH_PREFIX = "issue-"
SESSION_PREFIX = "handy-agent-"
MANAGED_SESSION_PREFIX = "handy-"
CONTAINER_PREFIX = "handy-sandbox-"


# =============================================================================
# Naming conventions
# =============================================================================


def branch_name_for_issue(issue_number: int) -> str:
    """Branch (and worktree directory) name for an issue."""
    return f"{BRANCH_PREFIX}{issue_number}"


def issue_number_from_branch(branch: str) -> Optional[int]:
    """Issue number encoded in an issue-{n} branch name."""
    match = re.fullmatch(rf"{re.escape(BRANCH_PREFIX)}(\d+)", branch or "")
    return int(match.group(1)) if match else None


def session_name_for_issue(issue_number: int, prefix: str = SESSION_PREFIX) -> str:
    """Session name for an issue."""
    return f"{prefix}{issue_number}"


def session_name_manual(suffix: str, prefix: str = SESSION_PREFIX) -> str:
    """Session name for a manual, non-issue session."""
    return f"{prefix}manual-{suffix}"


def container_name_for_issue(issue_number: int, prefix: str = CONTAINER_PREFIX) -> str:
    """Sandbox container name for an issue."""
    return f"{prefix}{issue_number}"


def issue_number_from_container(name: str, prefix: str = CONTAINER_PREFIX) -> Optional[int]:
    """
    Issue number embedded in a sandbox container name.

    Docker sometimes reports names with a leading slash; that is stripped.
    """
    name = (name or "").lstrip("/")
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix):]
    return int(suffix) if suffix.isdigit() else None


# =============================================================================
# Port allocation
# =============================================================================


def allocate_port_range(
    issue_number: int,
    base: int = PORT_RANGE_BASE,
    size: int = PORT_RANGE_SIZE,
    slots: int = PORT_SLOTS,
) -> tuple[int, int]:
    """
    Host port range reserved for an issue.

    Returns:
        (first_port, last_port), e.g. (30000, 30099) for slot 0.
    """
    slot = issue_number % slots
    first = base + slot * size
    return first, first + size - 1


def remap_port_to_range(
    container_port: int,
    issue_number: int,
    base: int = PORT_RANGE_BASE,
    size: int = PORT_RANGE_SIZE,
    slots: int = PORT_SLOTS,
) -> int:
    """Host port for a container port inside the issue's range (3000 -> base + 0)."""
    first, _ = allocate_port_range(issue_number, base, size, slots)
    return first + (container_port % size)


def remap_ports(
    mappings: Iterable[PortMapping],
    issue_number: int,
    base: int = PORT_RANGE_BASE,
    size: int = PORT_RANGE_SIZE,
    slots: int = PORT_SLOTS,
) -> list[PortMapping]:
    """Move every mapping's host port into the issue's range, dropping duplicates."""
    remapped: list[PortMapping] = []
    seen: set[int] = set()
    for mapping in mappings:
        host_port = remap_port_to_range(mapping.container_port, issue_number, base, size, slots)
        if host_port in seen:
            continue
        seen.add(host_port)
        remapped.append(PortMapping(host_port, mapping.container_port, mapping.protocol))
    return remapped


def parse_port_mappings(port_strings: Iterable[str]) -> list[PortMapping]:
    """
    Parse port mapping strings.

    Accepts "3000", "8080:80" and "5353:53/udp". Entries that do not parse
    are skipped.
    """
    ports: list[PortMapping] = []
    for raw in port_strings:
        entry = (raw or "").strip()
        if not entry:
            continue

        protocol = None
        if "/" in entry:
            entry, protocol = entry.split("/", 1)
            protocol = protocol or "tcp"

        try:
            if ":" in entry:
                host, container = entry.split(":", 1)
                ports.append(PortMapping(int(host), int(container), protocol))
            else:
                port = int(entry)
                ports.append(PortMapping(port, port, protocol))
        except ValueError:
            logger.debug("Skipping unparseable port mapping %r", raw)
            continue

    return ports


def _read(path: Path) -> str:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return ""


def detect_project_ports(worktree_path: str | Path) -> list[PortMapping]:
    """
    Guess the development ports a project listens on from its files.

    Looks at package.json, Python packaging files, go.mod, Cargo.toml and
    docker-compose files. Returns same-port mappings, deduplicated.
    """
    root = Path(worktree_path)
    ports: list[int] = []

    package_json = root / "package.json"
    if package_json.exists():
        try:
            package = json.loads(_read(package_json) or "{}")
        except json.JSONDecodeError:
            package = {}
        deps = {}
        deps.update(package.get("dependencies") or {})
        deps.update(package.get("devDependencies") or {})
        node_ports: list[int] = []
        if "next" in deps or "react-scripts" in deps:
            node_ports.append(3000)
        if "vite" in deps:
            node_ports.extend([5173, 5174, 24678])
        if "@angular/core" in deps:
            node_ports.append(4200)
        if "expo" in deps:
            node_ports.extend([19000, 19001, 8081])
        if not node_ports and any(d in deps for d in ("express", "fastify", "koa")):
            node_ports.append(3000)
        ports.extend(node_ports)

    if (root / "manage.py").exists():
        ports.append(8000)
    else:
        for name in ("pyproject.toml", "requirements.txt"):
            content = _read(root / name).lower()
            if "fastapi" in content or "uvicorn" in content:
                ports.append(8000)
                break
            if "flask" in content:
                ports.append(5000)
                break

    if (root / "go.mod").exists():
        ports.append(8080)

    cargo = _read(root / "Cargo.toml")
    if "tauri" in cargo:
        ports.extend([1420, 5173])
    if any(name in cargo for name in ("actix", "axum", "rocket")):
        ports.append(8080)

    for name in ("docker-compose.yml", "docker-compose.yaml"):
        for line in _read(root / name).splitlines():
            entry = line.strip().lstrip("-").strip().strip("'\"")
            match = re.match(r"^(\d+):(\d+)", entry)
            if match:
                ports.append(int(match.group(1)))

    unique: list[int] = []
    for port in ports:
        if port not in unique:
            unique.append(port)

    logger.info("Detected ports %s for project at %s", unique, root)
    return [PortMapping(p, p) for p in unique]


# =============================================================================
# Collision checks
# =============================================================================


class CollisionKind(Enum):
    """What already occupies a derived worktree/branch name."""
    NONE = "none"
    WORKTREE = "worktree"          # Registered worktree on the branch or at the path
    BRANCH_ONLY = "branch_only"    # Branch exists but no worktree uses it
    PATH_ONLY = "path_only"        # Directory exists but is not a registered worktree


@dataclass
class CollisionCheck:
    """Result of checking a branch/path pair before creating a worktree."""
    branch: str
    path: str
    worktree_exists: bool = False
    branch_exists: bool = False
    path_exists: bool = False
    existing_worktree_path: Optional[str] = None

    @property
    def kind(self) -> CollisionKind:
        """Most specific collision present."""
        if self.worktree_exists:
            return CollisionKind.WORKTREE
        if self.branch_exists:
            return CollisionKind.BRANCH_ONLY
        if self.path_exists:
            return CollisionKind.PATH_ONLY
        return CollisionKind.NONE

    @property
    def has_collision(self) -> bool:
        """True if anything already uses the name."""
        return self.kind is not CollisionKind.NONE

    def describe(self) -> str:
        """Human readable explanation."""
        kind = self.kind
        if kind is CollisionKind.WORKTREE:
            where = self.existing_worktree_path or self.path
            return f"Branch '{self.branch}' already exists as worktree at {where}"
        if kind is CollisionKind.BRANCH_ONLY:
            return f"Branch '{self.branch}' already exists (no worktree)"
        if kind is CollisionKind.PATH_ONLY:
            return f"Path {self.path} already exists"
        return f"No collision for branch '{self.branch}'"
