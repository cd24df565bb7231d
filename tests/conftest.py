"""Shared fixtures: a throwaway project checkout and in-memory providers."""

import pytest
from typer.testing import CliRunner

from handy_agents.config import GitHubConfig, HandyConfig, clear_config_cache
from handy_agents.logger import clear_logger_cache
from handy_agents.orchestrator import AgentOrchestrator
from handy_agents.pipeline.store import PipelineStore
from handy_agents.pipeline.tracker import PipelineTracker

from tests.fakes import FakeDocker, FakeGitHub, FakeTmux, FakeWorktrees

TRACKING_REPO = "acme/widgets"
MACHINE_ID = "test-machine"


@pytest.fixture(autouse=True)
def _clear_caches():
    """Config and logger caches are module-level; reset them around every test."""
    clear_config_cache()
    clear_logger_cache()
    yield
    clear_config_cache()
    clear_logger_cache()


@pytest.fixture
def repo_root(tmp_path):
    """A directory that looks like a git checkout."""
    root = tmp_path / "widgets"
    root.mkdir()
    (root / ".git").mkdir()
    return root


@pytest.fixture
def config(repo_root):
    """HandyConfig rooted at the throwaway checkout."""
    return HandyConfig(repo_root=str(repo_root), github=GitHubConfig(repo=TRACKING_REPO))


@pytest.fixture
def tmux():
    return FakeTmux()


@pytest.fixture
def worktrees(config):
    return FakeWorktrees(config)


@pytest.fixture
def docker(config):
    return FakeDocker(config.sandbox)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def orchestrator(config, tmux, worktrees, docker, github):
    """Orchestrator wired to the fakes."""
    return AgentOrchestrator(
        config,
        tmux=tmux,
        worktrees=worktrees,
        docker=docker,
        github=github,
        machine_id=MACHINE_ID,
    )


@pytest.fixture
def store(config):
    return PipelineStore(config.pipeline_store_path, max_history=config.pipeline.max_history, lock_timeout=2)


@pytest.fixture
def tracker(config, orchestrator, store):
    return PipelineTracker(config, orchestrator=orchestrator, store=store)


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
