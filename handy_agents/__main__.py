"""
Entry point for running handy_agents as a module.

Allows running as: python -m handy_agents
"""

from handy_agents.cli import cli_main

if __name__ == "__main__":
    cli_main()
