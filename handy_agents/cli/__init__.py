"""CLI package for handy-agents.

Modules:
    app.py      - Main Typer app, version callback, sub-app registration
    agent.py    - Agent session commands (spawn, list, recover, cleanup, ...)
    sandbox.py  - Sandbox container commands
    pipeline.py - Pipeline tracking commands
    epic.py     - Epic workflow commands
    display.py  - Rich formatting for statuses and tables
    common.py   - Shared helpers (get_console, config loading, error boundary)

Usage:
    from handy_agents.cli import app, cli_main
"""
from handy_agents.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
