"""Utility modules for Handy Agents."""

from handy_agents.utils.fs import (
    FileSystemError,
    ensure_dir,
    is_git_checkout,
    read_text,
    safe_write,
)
from handy_agents.utils.sanitize import sanitize_output, truncate

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "is_git_checkout",
    "read_text",
    "safe_write",
    "sanitize_output",
    "truncate",
]
