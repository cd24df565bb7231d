"""
Handy Agents - orchestration for autonomous coding agents.

Allocates isolated worktrees, tmux sessions and optional container sandboxes
per GitHub issue, tracks each unit of work from assignment to merged PR, and
recovers gracefully after crashes or restarts.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
