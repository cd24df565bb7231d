"""
Persistence for pipeline state.

This module handles:
- Loading and saving <state_dir>/pipeline_store.json
- A transaction() context manager holding a file lock across the whole
  load → mutate → save cycle, so concurrent handlers cannot lose updates
- Atomic writes (temp file + rename)

A missing store file is an empty state. A corrupt one raises
StateStoreError rather than being silently replaced.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from filelock import FileLock, Timeout

from handy_agents.errors import StateStoreError
from handy_agents.pipeline.models import PipelineState
from handy_agents.utils.fs import FileSystemError, read_text, safe_write

if TYPE_CHECKING:
    from handy_agents.logger import HandyLogger

# Store document version for migrations
STORE_VERSION = 1


class PipelineStore:
    """
    File-backed pipeline state.

    Storage layout:
    <state_dir>/
    ├── pipeline_store.json        # {"version", "pipeline": PipelineState}
    └── pipeline_store.json.lock   # Lock file for read-modify-write
    """

    def __init__(
        self,
        path: Path,
        max_history: int = 100,
        lock_timeout: float = 10,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: Store document path.
            max_history: History cap applied to every loaded state.
            lock_timeout: Seconds to wait for the lock.
            logger: Optional logger for recording operations.
        """
        self.path = Path(path)
        self.max_history = max_history
        self.lock_timeout = lock_timeout
        self._logger = logger
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "pipeline_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def load(self) -> PipelineState:
        """
        Read the current state without taking the lock.

        Raises:
            StateStoreError: If the document is unreadable or corrupt.
        """
        try:
            content = read_text(self.path)
        except FileSystemError as e:
            raise StateStoreError(str(e))
        if not content or not content.strip():
            return PipelineState(max_history=self.max_history)

        try:
            data = json.loads(content)
            state = PipelineState.from_dict(data.get("pipeline") or {})
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            self._log("pipeline_store_corrupted", {"path": str(self.path), "error": str(e)}, level="error")
            raise StateStoreError(f"Corrupted pipeline store {self.path}: {e}")

        state.max_history = self.max_history
        return state

    def save(self, state: PipelineState) -> None:
        """
        Write state atomically. Callers that also read should use transaction().

        Raises:
            StateStoreError: If the write fails.
        """
        document = {"version": STORE_VERSION, "pipeline": state.to_dict()}
        try:
            safe_write(self.path, json.dumps(document, indent=2))
        except FileSystemError as e:
            raise StateStoreError(str(e))

    @contextmanager
    def transaction(self) -> Iterator[PipelineState]:
        """
        Locked read-modify-write.

        The yielded state is saved when the block exits normally and
        discarded if it raises.

        Raises:
            StateStoreError: If the lock cannot be acquired in time.

        Example:
            with store.transaction() as state:
                state.require_item(item_id).skip()
        """
        with self._locked():
            state = self.load()
            yield state
            self.save(state)

    def read(self) -> PipelineState:
        """Consistent snapshot taken under the lock."""
        with self._locked():
            return self.load()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout:
            self._log("pipeline_store_lock_timeout", {"path": str(self.path)}, level="error")
            raise StateStoreError(
                f"Timed out after {self.lock_timeout}s waiting for lock on {self.path}"
            )
        try:
            yield
        finally:
            self._lock.release()
