"""Shared state and helpers for the CLI.

Holds the --project override, the console singleton, config loading and
the error boundary every command runs inside.
This module should NOT import from agent/sandbox/pipeline/epic modules.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from handy_agents.config import HandyConfig
    from handy_agents.epic.service import EpicService
    from handy_agents.logger import HandyLogger
    from handy_agents.orchestrator import AgentOrchestrator
    from handy_agents.pipeline.tracker import PipelineTracker

# ============================================================================
# Global State
# ============================================================================

# Project directory override (set via --project)
_project_dir: Optional[str] = None

_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    global _project_dir
    _project_dir = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config and component construction
# ============================================================================


def load_config_safe() -> Optional["HandyConfig"]:
    """Load config.yaml from the project directory, or None if there is none."""
    from handy_agents.config import ConfigError, load_config

    project_dir = get_project_dir()
    if project_dir:
        os.chdir(project_dir)
    try:
        return load_config()
    except ConfigError as e:
        if "not found" in str(e):
            return None
        raise


def get_config_or_default() -> "HandyConfig":
    """Config from config.yaml, or all defaults when no file exists."""
    from handy_agents.config import ConfigError, HandyConfig

    try:
        config = load_config_safe()
    except ConfigError as e:
        get_console().print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    if config is not None:
        return config
    return HandyConfig(repo_root=get_project_dir() or ".")


def get_cli_logger(component: str, config: "HandyConfig") -> "HandyLogger":
    from handy_agents.logger import get_logger

    return get_logger(component, config)


def build_orchestrator(config: "HandyConfig") -> "AgentOrchestrator":
    from handy_agents.orchestrator import AgentOrchestrator

    return AgentOrchestrator(config, logger=get_cli_logger("orchestrator", config))


def build_tracker(config: "HandyConfig") -> "PipelineTracker":
    from handy_agents.pipeline.tracker import PipelineTracker

    logger = get_cli_logger("pipeline", config)
    return PipelineTracker(config, orchestrator=build_orchestrator(config), logger=logger)


def build_epic_service(config: "HandyConfig") -> "EpicService":
    from handy_agents.epic.service import EpicService

    tracker = build_tracker(config)
    return EpicService(
        config,
        orchestrator=tracker.orchestrator,
        tracker=tracker,
        logger=get_cli_logger("epic", config),
    )


def require_repo(repo: Optional[str], config: "HandyConfig") -> str:
    """Explicit repo or github.repo; exits when neither is set."""
    resolved = repo or config.github.repo
    if not resolved:
        get_console().print("[red]Error:[/red] No repository given and github.repo is not configured")
        raise typer.Exit(1)
    return resolved


# ============================================================================
# Output helpers
# ============================================================================


@contextmanager
def cli_errors() -> Iterator[None]:
    """Print HandyError/ConfigError as a red error line and exit 1."""
    from handy_agents.config import ConfigError
    from handy_agents.errors import HandyError

    try:
        yield
    except (HandyError, ConfigError) as e:
        get_console().print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


def print_warnings(warnings: Iterable[str]) -> None:
    console = get_console()
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
