"""
Event log for Handy Agents.

Every orchestration component records what it did as one JSON object per
line under ``<state_dir>/logs``, one file per component per UTC day:

    {"timestamp": "...Z", "level": "info", "event_type": "agent_spawned",
     "component": "orchestrator", "data": {...}, "session_id": "..."}

``session_id`` is only present inside ``session_context()``. Each event is
also forwarded to the stdlib ``logging`` tree under
``handy_agents.events.<component>`` so it shows up in normal log handlers.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from handy_agents.config import HandyConfig, get_config


class LogLevel:
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    "warning": logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HandyLogger:
    """Append-only JSONL event log for one component."""

    def __init__(self, component: str, config: Optional[HandyConfig] = None) -> None:
        """
        Args:
            component: Prefix of the log file name (e.g. "orchestrator").
            config: Config supplying the logs directory; loaded lazily when omitted.
        """
        self.component = component
        self._config = config
        self._session_id: Optional[str] = None
        self._forward = logging.getLogger(f"handy_agents.events.{component}")

    @property
    def config(self) -> HandyConfig:
        if self._config is None:
            self._config = get_config()
        return self._config

    def log_file(self, date: Optional[str] = None) -> Path:
        """Path of the file holding events for ``date`` (YYYY-MM-DD, UTC today by default)."""
        day = date or _utc_now().strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self.component}-{day}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Record one event.

        Args:
            event_type: Short snake_case name, e.g. "agent_spawned".
            data: JSON-serializable details; non-serializable values are stringified.
            level: One of the LogLevel values.
        """
        payload = dict(data or {})
        record: dict[str, Any] = {
            "timestamp": _utc_now().isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "component": self.component,
            "data": payload,
        }
        if self._session_id:
            record["session_id"] = self._session_id

        line = json.dumps(record, default=str)
        self._forward.log(_STDLIB_LEVELS.get(level, logging.INFO), "%s %s",
                          event_type, json.dumps(payload, default=str))

        target = self.log_file()
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[HandyLogger]:
        """
        Tag every event logged inside the block with ``session_id``.

        Example:
            with logger.session_context("handy-agent-42") as log:
                log.info("agent_restarted", {"issue": 42})
        """
        previous, self._session_id = self._session_id, session_id
        try:
            yield self
        finally:
            self._session_id = previous

    def _iter_records(self, date: Optional[str]) -> Iterator[dict[str, Any]]:
        path = self.log_file(date)
        if not path.exists():
            return
        with path.open(encoding="utf-8") as handle:
            for raw in handle:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    # Partially written line from a crashed process
                    continue

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Return a day's events in write order, optionally filtered.

        Args:
            date: YYYY-MM-DD; today when omitted.
            level: Keep only events at this level.
            event_type: Keep only events of this type.
            limit: Stop after this many matches.
        """
        matched: list[dict[str, Any]] = []
        for record in self._iter_records(date):
            if level is not None and record.get("level") != level:
                continue
            if event_type is not None and record.get("event_type") != event_type:
                continue
            matched.append(record)
            if limit and len(matched) == limit:
                break
        return matched


_loggers: dict[str, HandyLogger] = {}


def get_logger(component: str, config: Optional[HandyConfig] = None) -> HandyLogger:
    """Shared HandyLogger for ``component``; the first caller's config wins."""
    existing = _loggers.get(component)
    if existing is None:
        existing = _loggers[component] = HandyLogger(component, config)
    return existing


def clear_logger_cache() -> None:
    _loggers.clear()
