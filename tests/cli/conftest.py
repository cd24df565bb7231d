"""CLI fixtures: commands run against the in-memory providers."""

import pytest

from handy_agents.epic.service import EpicService
from handy_agents.epic.store import EpicStore


@pytest.fixture
def wired(monkeypatch, config, orchestrator, github, tracker):
    """Point every command module at the test config and fakes."""
    service = EpicService(config, orchestrator=orchestrator, github=github, tracker=tracker,
                          store=EpicStore(config.epic_store_path, lock_timeout=2))
    for module in ("agent", "sandbox", "pipeline", "epic"):
        monkeypatch.setattr(f"handy_agents.cli.{module}.get_config_or_default", lambda: config)
    monkeypatch.setattr("handy_agents.cli.agent.build_orchestrator", lambda c: orchestrator)
    monkeypatch.setattr("handy_agents.cli.sandbox.build_orchestrator", lambda c: orchestrator)
    monkeypatch.setattr("handy_agents.cli.pipeline.build_tracker", lambda c: tracker)
    monkeypatch.setattr("handy_agents.cli.epic.build_epic_service", lambda c: service)
    return service
