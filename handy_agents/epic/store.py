"""
Epic store.

Persists <state_dir>/epic_store.json:
- the last loaded EpicState per repo#number (a display cache, refreshed on
  every load and never read by recovery, which always goes back to the
  issue tracker)
- the active epic, with the agent session assigned to each sub-issue
- a capped history of deactivated epics that were archived

Version 1 documents (epics only) are read as having no active epic.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from filelock import FileLock, Timeout

from handy_agents.epic.models import ActiveEpicState, EpicState, epic_key
from handy_agents.errors import StateStoreError
from handy_agents.models import utc_now_iso
from handy_agents.utils.fs import FileSystemError, read_text, safe_write

if TYPE_CHECKING:
    from handy_agents.logger import HandyLogger

STORE_VERSION = 2


@dataclass
class EpicStoreState:
    """Contents of the store document."""
    epics: dict[str, EpicState] = field(default_factory=dict)
    active: Optional[ActiveEpicState] = None
    history: list[ActiveEpicState] = field(default_factory=list)


class EpicStore:
    """
    File-backed epic cache and active-epic record, guarded by a file lock.

    Storage layout:
    <state_dir>/
    ├── epic_store.json        # {"version", "epics", "active", "history"}
    └── epic_store.json.lock   # Lock file for read-modify-write
    """

    def __init__(
        self,
        path: Path,
        lock_timeout: float = 10,
        max_history: int = 20,
        logger: Optional[HandyLogger] = None,
    ) -> None:
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self.max_history = max_history
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
            log_data = {"component": "epic_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _load(self) -> EpicStoreState:
        try:
            content = read_text(self.path)
        except FileSystemError as e:
            raise StateStoreError(str(e))
        if not content or not content.strip():
            return EpicStoreState()
        try:
            data = json.loads(content)
            active = data.get("active")
            return EpicStoreState(
                epics={key: EpicState.from_dict(value) for key, value in (data.get("epics") or {}).items()},
                active=ActiveEpicState.from_dict(active) if active else None,
                history=[ActiveEpicState.from_dict(entry) for entry in data.get("history") or []],
            )
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            self._log("epic_store_corrupted", {"path": str(self.path), "error": str(e)}, level="error")
            raise StateStoreError(f"Corrupted epic store {self.path}: {e}")

    def _save(self, state: EpicStoreState) -> None:
        if len(state.history) > self.max_history:
            state.history = state.history[-self.max_history:]
        document = {
            "version": STORE_VERSION,
            "epics": {key: epic.to_dict() for key, epic in state.epics.items()},
            "active": state.active.to_dict() if state.active else None,
            "history": [entry.to_dict() for entry in state.history],
        }
        try:
            safe_write(self.path, json.dumps(document, indent=2))
        except FileSystemError as e:
            raise StateStoreError(str(e))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout:
            raise StateStoreError(
                f"Timed out after {self.lock_timeout}s waiting for lock on {self.path}"
            )
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self) -> Iterator[EpicStoreState]:
        """Locked read-modify-write over the whole document."""
        with self._locked():
            state = self._load()
            yield state
            self._save(state)

    # =========================================================================
    # Epic cache
    # =========================================================================

    def get(self, repo: str, number: int) -> Optional[EpicState]:
        with self._locked():
            return self._load().epics.get(epic_key(repo, number))

    def list_epics(self) -> list[EpicState]:
        with self._locked():
            return list(self._load().epics.values())

    def put(self, epic: EpicState) -> None:
        with self.transaction() as state:
            state.epics[epic.key] = epic

    def remove(self, repo: str, number: int) -> Optional[EpicState]:
        with self.transaction() as state:
            return state.epics.pop(epic_key(repo, number), None)

    # =========================================================================
    # Active epic
    # =========================================================================

    def get_active(self) -> Optional[ActiveEpicState]:
        with self._locked():
            return self._load().active

    def set_active(self, active: ActiveEpicState) -> Optional[ActiveEpicState]:
        """
        Make ``active`` the active epic.

        Setting the epic that is already active keeps its agent assignments
        and activation time.

        Returns:
            The previously active epic if it was a different one. It is
            replaced without being archived.
        """
        with self.transaction() as state:
            previous = state.active
            if previous and previous.key == active.key:
                active.agents = {**previous.agents, **active.agents}
                active.activated_at = previous.activated_at
            state.active = active
            state.epics[active.key] = active.epic
        self._log("active_epic_set", {"epic": active.key})
        if previous and previous.key != active.key:
            return previous
        return None

    def clear_active(self, archive: bool = False) -> Optional[ActiveEpicState]:
        """
        Deactivate the active epic.

        Args:
            archive: Stamp it archived and append it to the history.

        Returns:
            The epic that was active, or None.
        """
        with self.transaction() as state:
            cleared = state.active
            state.active = None
            if cleared and archive:
                cleared.archived_at = utc_now_iso()
                state.history.append(cleared)
        if cleared:
            self._log("active_epic_cleared", {"epic": cleared.key, "archived": archive})
        return cleared

    def update_active(self, mutate: Callable[[ActiveEpicState], None]) -> Optional[ActiveEpicState]:
        """
        Apply ``mutate`` to the active epic under the lock.

        Returns:
            The updated active epic, or None if no epic is active (``mutate``
            is not called).
        """
        with self.transaction() as state:
            if state.active is None:
                return None
            mutate(state.active)
            state.epics[state.active.key] = state.active.epic
            return state.active

    def get_history(self, limit: Optional[int] = None) -> list[ActiveEpicState]:
        """Archived epics, most recent first."""
        with self._locked():
            history = list(reversed(self._load().history))
        return history[:limit] if limit else history
