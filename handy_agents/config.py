"""
Project configuration for Handy Agents.

Settings live in config.yaml at the project root. Every section is
optional and every field has a default, so an old or partial file keeps
working. String values may reference the environment as ${VAR}.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """config.yaml is missing, unreadable or holds invalid settings."""
    pass


@dataclass
class GitHubConfig:
    """Issue tracker (gh CLI) configuration."""
    repo: str = ""                             # Tracking repository in "owner/repo" format
    work_repo: str = ""                        # Repository agents work in (defaults to repo)
    binary: str = "gh"                         # Path to gh binary
    timeout_seconds: int = 30                  # Command timeout in seconds
    working_labels: list[str] = field(default_factory=lambda: ["agent-assigned"])
    pr_labels: list[str] = field(default_factory=lambda: ["agent-created"])
    skip_labels: list[str] = field(default_factory=lambda: ["agent-skipped"])
    todo_labels: list[str] = field(default_factory=lambda: ["agent-todo"])

    @property
    def effective_work_repo(self) -> str:
        """Work repository, falling back to the tracking repository."""
        return self.work_repo or self.repo


@dataclass
class TmuxConfig:
    """Terminal session configuration."""
    binary: str = "tmux"                       # Path to tmux binary
    socket: str = "handy"                      # Dedicated server socket (-L)
    session_prefix: str = "handy-agent-"       # Prefix for agent sessions
    master_session: str = "handy-master"       # Persistent management session
    output_lines: int = 100                    # Default lines for capture-pane
    timeout_seconds: int = 15                  # Command timeout in seconds


@dataclass
class WorktreeConfig:
    """Git worktree configuration."""
    binary: str = "git"                        # Path to git binary
    base_path: str = ""                        # Where worktrees live ("" = <repo>-worktrees)
    prefix: str = ""                           # Optional directory name prefix
    base_branch: str = ""                      # Branch to fork from ("" = detect default)
    timeout_seconds: int = 60                  # Command timeout in seconds


@dataclass
class SandboxConfig:
    """Container sandbox configuration."""
    enabled: bool = False                      # Run agents inside containers by default
    binary: str = "docker"                     # Path to docker binary
    image: str = "node:20-bookworm"            # Image agents run in
    container_prefix: str = "handy-sandbox-"   # Container name prefix
    network: str = "handy-agents"              # Shared agent network
    network_mode: str = "bridge"               # --network value for docker run
    memory_limit: str = "4g"                   # -m value
    cpu_limit: str = "2"                       # --cpus value
    port_base: int = 30000                     # First host port handed out
    port_range_size: int = 100                 # Ports per issue slot
    slots: int = 100                           # Number of distinct slots
    auto_accept: bool = True                   # Skip agent permission prompts inside sandbox
    credentials_volume: str = "handy-credentials"  # Persistent volume for agent credentials
    timeout_seconds: int = 120                 # Command timeout in seconds


@dataclass
class AgentsConfig:
    """Agent launch configuration."""
    default_type: str = "claude"               # Agent used when none is specified
    auto_accept: bool = False                  # Skip permission prompts outside sandbox


@dataclass
class PipelineConfig:
    """Pipeline store configuration."""
    store_file: str = "pipeline_store.json"    # File under state_dir
    max_history: int = 100                     # Archived items kept
    lock_timeout_seconds: int = 10             # Seconds to wait for the store lock


@dataclass
class EpicConfig:
    """Epic orchestration configuration."""
    store_file: str = "epic_store.json"        # Epic cache file under state_dir
    working_label: str = "staging"             # Label marking a sub-issue with an agent on it
    todo_label: str = "todo"                   # Label for freshly created sub-issues
    epic_label: str = "epic"                   # Label for the epic issue


@dataclass
class HandyConfig:
    """Top-level settings; paths are resolved against repo_root."""
    # Paths
    repo_root: str = "."
    state_dir: str = ".handy"

    # Sections
    github: GitHubConfig = field(default_factory=GitHubConfig)
    tmux: TmuxConfig = field(default_factory=TmuxConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    epic: EpicConfig = field(default_factory=EpicConfig)

    def __post_init__(self) -> None:
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        """Absolute path to the state directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.state_path / "logs"

    @property
    def pipeline_store_path(self) -> Path:
        """Absolute path to the pipeline store document."""
        return self.state_path / self.pipeline.store_file

    @property
    def epic_store_path(self) -> Path:
        """Absolute path to the epic cache document."""
        return self.state_path / self.epic.store_file

    @property
    def worktrees_path(self) -> Path:
        """Directory where issue worktrees are created."""
        if self.worktree.base_path:
            base = Path(self.worktree.base_path)
            if not base.is_absolute():
                base = Path(self.repo_root) / base
            return base
        root = Path(self.repo_root)
        return root.parent / f"{root.name}-worktrees"


_config_cache: Optional[HandyConfig] = None

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _substitute_env(match: re.Match) -> str:
    name = match.group(1)
    if name not in os.environ:
        raise ConfigError(f"config.yaml references ${{{name}}} but it is not set in the environment")
    return os.environ[name]


def _resolve_env_vars(value: Any) -> Any:
    """Expand ${VAR} references in strings, recursing through dicts and lists."""
    if isinstance(value, dict):
        return {key: _resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(_substitute_env, value)
    return value


def _parse_github_config(data: dict[str, Any]) -> GitHubConfig:
    """Parse GitHub configuration from dict."""
    return GitHubConfig(
        repo=data.get("repo", ""),
        work_repo=data.get("work_repo", ""),
        binary=data.get("binary", "gh"),
        timeout_seconds=data.get("timeout_seconds", 30),
        working_labels=data.get("working_labels", ["agent-assigned"]),
        pr_labels=data.get("pr_labels", ["agent-created"]),
        skip_labels=data.get("skip_labels", ["agent-skipped"]),
        todo_labels=data.get("todo_labels", ["agent-todo"]),
    )


def _parse_tmux_config(data: dict[str, Any]) -> TmuxConfig:
    """Parse tmux configuration from dict."""
    return TmuxConfig(
        binary=data.get("binary", "tmux"),
        socket=data.get("socket", "handy"),
        session_prefix=data.get("session_prefix", "handy-agent-"),
        master_session=data.get("master_session", "handy-master"),
        output_lines=data.get("output_lines", 100),
        timeout_seconds=data.get("timeout_seconds", 15),
    )


def _parse_worktree_config(data: dict[str, Any]) -> WorktreeConfig:
    """Parse worktree configuration from dict."""
    return WorktreeConfig(
        binary=data.get("binary", "git"),
        base_path=data.get("base_path", ""),
        prefix=data.get("prefix", ""),
        base_branch=data.get("base_branch", ""),
        timeout_seconds=data.get("timeout_seconds", 60),
    )


def _parse_sandbox_config(data: dict[str, Any]) -> SandboxConfig:
    """Parse sandbox configuration from dict."""
    config = SandboxConfig(
        enabled=data.get("enabled", False),
        binary=data.get("binary", "docker"),
        image=data.get("image", "node:20-bookworm"),
        container_prefix=data.get("container_prefix", "handy-sandbox-"),
        network=data.get("network", "handy-agents"),
        network_mode=data.get("network_mode", "bridge"),
        memory_limit=str(data.get("memory_limit", "4g")),
        cpu_limit=str(data.get("cpu_limit", "2")),
        port_base=data.get("port_base", 30000),
        port_range_size=data.get("port_range_size", 100),
        slots=data.get("slots", 100),
        auto_accept=data.get("auto_accept", True),
        credentials_volume=data.get("credentials_volume", "handy-credentials"),
        timeout_seconds=data.get("timeout_seconds", 120),
    )
    if config.port_range_size <= 0 or config.slots <= 0:
        raise ConfigError("sandbox.port_range_size and sandbox.slots must be positive")
    if config.port_base + config.slots * config.port_range_size - 1 > 65535:
        raise ConfigError("sandbox port ranges exceed 65535")
    return config


def _parse_agents_config(data: dict[str, Any]) -> AgentsConfig:
    """Parse agent launch configuration from dict."""
    return AgentsConfig(
        default_type=data.get("default_type", "claude"),
        auto_accept=data.get("auto_accept", False),
    )


def _parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    """Parse pipeline configuration from dict."""
    return PipelineConfig(
        store_file=data.get("store_file", "pipeline_store.json"),
        max_history=data.get("max_history", 100),
        lock_timeout_seconds=data.get("lock_timeout_seconds", 10),
    )


def _parse_epic_config(data: dict[str, Any]) -> EpicConfig:
    """Parse epic configuration from dict."""
    return EpicConfig(
        store_file=data.get("store_file", "epic_store.json"),
        working_label=data.get("working_label", "staging"),
        todo_label=data.get("todo_label", "todo"),
        epic_label=data.get("epic_label", "epic"),
    )



def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if document is None or document == {}:
        raise ConfigError(f"Configuration file is empty: {path}")
    if not isinstance(document, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return document


def load_config(config_path: Optional[str] = None) -> HandyConfig:
    """
    Build a HandyConfig from a YAML file.

    Args:
        config_path: File to read; ``config.yaml`` in the working directory
            when omitted.

    Raises:
        ConfigError: Missing, empty or malformed file, an unset ${VAR},
            or sandbox port settings that do not fit the port space.
    """
    data = _resolve_env_vars(_read_yaml(Path(config_path or "config.yaml")))

    def section(name: str) -> dict[str, Any]:
        return data.get(name) or {}

    return HandyConfig(
        repo_root=data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".handy"),
        github=_parse_github_config(section("github")),
        tmux=_parse_tmux_config(section("tmux")),
        worktree=_parse_worktree_config(section("worktree")),
        sandbox=_parse_sandbox_config(section("sandbox")),
        agents=_parse_agents_config(section("agents")),
        pipeline=_parse_pipeline_config(section("pipeline")),
        epic=_parse_epic_config(section("epic")),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> HandyConfig:
    """Process-wide config, loaded on first use (or again with ``force_reload``)."""
    global _config_cache
    if force_reload or _config_cache is None:
        _config_cache = load_config(config_path)
    return _config_cache


def clear_config_cache() -> None:
    global _config_cache
    _config_cache = None
