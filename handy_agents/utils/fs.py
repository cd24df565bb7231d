"""
File helpers for the state stores.

Store documents are replaced atomically: content goes to a sibling temp
file which is then renamed over the target, so a reader (or a crash) never
sees half a document.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


class FileSystemError(Exception):
    """A file or directory could not be created, read or written."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """Create ``path`` and its parents if needed and return it as a Path."""
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Cannot create directory {directory}: {e}") from e
    return directory


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace the contents of ``path`` in one rename.

    Args:
        path: Destination file; missing parent directories are created.
        content: Full new contents.
        encoding: Text encoding, utf-8 by default.

    Raises:
        FileSystemError: If the temp file cannot be written or renamed.
    """
    target = Path(path)
    ensure_dir(target.parent)

    try:
        fd, scratch = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    except OSError as e:
        raise FileSystemError(f"Cannot write {target}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        # Same directory, so the rename stays on one filesystem
        os.replace(scratch, target)
    except OSError as e:
        Path(scratch).unlink(missing_ok=True)
        raise FileSystemError(f"Cannot write {target}: {e}") from e


def read_text(path: str | Path, default: Optional[str] = None, encoding: str = "utf-8") -> Optional[str]:
    """
    Contents of ``path``, or ``default`` when it does not exist.

    Raises:
        FileSystemError: If the path exists but is unreadable.
    """
    source = Path(path)
    if not source.exists():
        return default
    try:
        return source.read_text(encoding=encoding)
    except (OSError, UnicodeDecodeError) as e:
        raise FileSystemError(f"Cannot read {source}: {e}") from e


def is_git_checkout(path: str | Path) -> bool:
    """True if path is an existing directory containing a .git entry."""
    path = Path(path)
    return path.is_dir() and (path / ".git").exists()
