"""
Container sandbox provider backed by the docker CLI.

This module handles:
- Availability checks (docker info)
- Building docker run arguments for an issue sandbox (workspace mount,
  resource limits, remapped ports, credentials via an env file)
- Listing, inspecting, tailing, stopping and removing sandbox containers
- Creating the shared network and the credentials volume

Credentials are never placed on the command line. They are written to a
0600 env file which docker reads with --env-file.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from handy_agents.allocation import allocate_port_range, container_name_for_issue, issue_number_from_container
from handy_agents.errors import DockerError, ToolNotFoundError, ToolTimeoutError
from handy_agents.models import ENV_AGENT_TYPE, ENV_ISSUE_REF, PortMapping, SandboxDescriptor
from handy_agents.providers.base import CliProvider
from handy_agents.utils.fs import ensure_dir

if TYPE_CHECKING:
    from handy_agents.config import SandboxConfig
    from handy_agents.logger import HandyLogger

WORKSPACE_MOUNT = "/workspace"
CREDENTIALS_MOUNT = "/root/.claude"

PS_FORMAT = "{{.ID}}\t{{.Names}}\t{{.State}}\t{{.Status}}"
INSPECT_FORMAT = "{{.Id}}\t{{.State.Running}}\t{{.State.ExitCode}}\t{{.State.Status}}"


@dataclass
class ContainerInfo:
    """A sandbox container as reported by docker ps."""
    container_id: str
    name: str
    state: str
    status: str

    @property
    def issue_number(self) -> Optional[int]:
        return issue_number_from_container(self.name)

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass
class ContainerStatus:
    """Detailed container state from docker inspect."""
    container_id: str
    running: bool
    exit_code: Optional[int]
    status: str


@dataclass
class SandboxRequest:
    """Everything needed to start an agent in a sandbox."""
    issue_number: int
    issue_ref: str
    agent_type: str
    worktree_path: str
    command: str
    ports: list[PortMapping] = field(default_factory=list)
    env_file: Optional[str] = None
    image: Optional[str] = None


def write_env_file(path: Path, env: dict[str, str]) -> Path:
    """
    Write credentials to a docker env file readable only by the owner.

    Values containing newlines are rejected since docker cannot represent them.
    """
    ensure_dir(path.parent)
    lines = []
    for key, value in env.items():
        if "\n" in value:
            raise ValueError(f"Environment value for {key} contains a newline")
        lines.append(f"{key}={value}")

    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("\n".join(lines) + ("\n" if lines else ""))
    os.chmod(path, 0o600)
    return path


class DockerProvider(CliProvider):
    """Sandbox provider over the docker CLI."""

    component = "docker"
    error_class = DockerError

    def __init__(
        self,
        config: SandboxConfig,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        super().__init__(config.binary, config.timeout_seconds, logger)
        self.config = config

    # =========================================================================
    # Availability and shared resources
    # =========================================================================

    def is_available(self) -> bool:
        """True if the docker binary exists and the daemon answers."""
        try:
            return self._run(["info", "--format", "{{.ServerVersion}}"], timeout=10).ok
        except (ToolNotFoundError, ToolTimeoutError):
            return False

    def network_exists(self, name: Optional[str] = None) -> bool:
        return self._run(["network", "inspect", name or self.config.network]).ok

    def ensure_network(self, name: Optional[str] = None) -> bool:
        """
        Create the agent network if missing.

        Returns:
            True if the network was created.
        """
        network = name or self.config.network
        if self.network_exists(network):
            return False
        self._run_checked(["network", "create", network], what=f"create network {network}")
        self._log("network_created", {"network": network})
        return True

    def create_volume(self, name: Optional[str] = None) -> str:
        """Create a named volume (no-op if it exists) and return its name."""
        volume = name or self.config.credentials_volume
        self._run_checked(["volume", "create", volume], what=f"create volume {volume}")
        return volume

    # =========================================================================
    # Running sandboxes
    # =========================================================================

    def describe(self, issue_number: int, ports: Optional[list[PortMapping]] = None) -> SandboxDescriptor:
        """Deterministic sandbox identity for an issue."""
        name = container_name_for_issue(issue_number, self.config.container_prefix)
        return SandboxDescriptor(
            container_name=name,
            port_range=allocate_port_range(
                issue_number,
                self.config.port_base,
                self.config.port_range_size,
                self.config.slots,
            ),
            network_identity=name,
            port_mappings=list(ports or []),
        )

    def build_run_args(self, request: SandboxRequest, detached: bool = True) -> list[str]:
        """
        Arguments for docker run (without the binary).

        Args:
            request: Sandbox request.
            detached: Run with -d; otherwise -it --rm for an attached terminal.
        """
        name = container_name_for_issue(request.issue_number, self.config.container_prefix)
        args = ["run"]
        args.extend(["-d"] if detached else ["-it", "--rm"])
        args.extend([
            "--name", name,
            "--hostname", name,
            "-v", f"{request.worktree_path}:{WORKSPACE_MOUNT}",
            "-w", WORKSPACE_MOUNT,
        ])
        if self.config.credentials_volume:
            args.extend(["-v", f"{self.config.credentials_volume}:{CREDENTIALS_MOUNT}"])
        if self.config.memory_limit:
            args.extend(["-m", self.config.memory_limit])
        if self.config.cpu_limit:
            args.extend(["--cpus", self.config.cpu_limit])
        args.extend(["--network", self.config.network_mode])

        for mapping in request.ports:
            args.extend(["-p", mapping.to_docker_arg()])

        if request.env_file:
            args.extend(["--env-file", request.env_file])
        args.extend(["-e", f"{ENV_ISSUE_REF}={request.issue_ref}"])
        args.extend(["-e", f"{ENV_AGENT_TYPE}={request.agent_type}"])

        args.append(request.image or self.config.image)
        args.extend(["sh", "-c", request.command])
        return args

    def interactive_command(self, request: SandboxRequest) -> str:
        """Shell line that runs the sandbox attached to the current terminal."""
        return shlex.join([self.binary, *self.build_run_args(request, detached=False)])

    def spawn_sandbox(self, request: SandboxRequest) -> SandboxDescriptor:
        """
        Start a detached sandbox container.

        Raises:
            DockerError: If docker run fails.
        """
        result = self._run_checked(self.build_run_args(request, detached=True),
                                   what=f"start sandbox for issue {request.issue_number}")
        descriptor = self.describe(request.issue_number, request.ports)
        descriptor.container_id = result.stdout.strip() or None
        self._log("sandbox_started", {
            "container": descriptor.container_name,
            "container_id": descriptor.container_id,
            "ports": [p.to_docker_arg() for p in request.ports],
        })
        return descriptor

    # =========================================================================
    # Inspection and teardown
    # =========================================================================

    def list_sandboxes(self) -> list[ContainerInfo]:
        """All containers (running or not) whose name carries the sandbox prefix."""
        result = self._run_checked(
            ["ps", "-a", "--filter", f"name={self.config.container_prefix}", "--format", PS_FORMAT],
            what="list sandboxes",
        )
        containers = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 4:
                continue
            name = parts[1].lstrip("/")
            # The name filter is a substring match
            if not name.startswith(self.config.container_prefix):
                continue
            containers.append(ContainerInfo(parts[0], name, parts[2], parts[3]))
        return containers

    def container_exists(self, name: str) -> bool:
        return self._run(["inspect", "--type", "container", name]).ok

    def get_status(self, name: str) -> Optional[ContainerStatus]:
        """
        Inspect a container.

        Returns:
            ContainerStatus, or None if no such container exists.
        """
        result = self._run(["inspect", "--type", "container", "--format", INSPECT_FORMAT, name])
        if not result.ok:
            if "no such" in result.stderr.lower():
                return None
            raise DockerError(f"inspect {name} failed: {result.stderr.strip()}",
                              ["inspect", name], result.returncode, result.stderr)

        parts = result.stdout.strip().split("\t")
        if len(parts) < 4:
            raise DockerError(f"Unexpected inspect output for {name}")
        try:
            exit_code: Optional[int] = int(parts[2])
        except ValueError:
            exit_code = None
        return ContainerStatus(
            container_id=parts[0],
            running=parts[1].lower() == "true",
            exit_code=exit_code,
            status=parts[3],
        )

    def get_logs(self, name: str, tail: int = 100) -> str:
        """Last lines of a container's output (stdout and stderr combined)."""
        result = self._run_checked(["logs", "--tail", str(tail), name], what=f"read logs of {name}")
        return result.stdout + result.stderr

    def stop(self, name: str) -> None:
        self._run_checked(["stop", name], what=f"stop {name}")
        self._log("sandbox_stopped", {"container": name})

    def remove(self, name: str, force: bool = True) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(name)
        self._run_checked(args, what=f"remove {name}")
        self._log("sandbox_removed", {"container": name})
