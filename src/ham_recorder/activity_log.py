"""Bounded, persistent activity log surfaced to status consumers."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Mapping

from .store import KeyValueStore

LOGS_KEY = "logs"
DEFAULT_MAX_ENTRIES = 200

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


_STDLIB_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(slots=True)
class LogEntry:
    """A single activity record."""

    timestamp: float
    level: LogLevel
    message: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
        }
        if self.data:
            payload["data"] = self.data
        return payload


class ActivityLog:
    """Newest-first log capped at ``max_entries`` and mirrored to ``logging``."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._store = store
        self._entries: Deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._load_entries()

    # ------------------------------ operations -----------------------------
    def record(
        self,
        level: LogLevel | str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> LogEntry:
        """Prepend a new entry, persist the log and return the entry."""

        entry = LogEntry(
            timestamp=time.time(),
            level=LogLevel(level),
            message=message,
            data=dict(data) if data else None,
        )
        logger.log(_STDLIB_LEVELS[entry.level], "%s", message)
        with self._lock:
            self._entries.appendleft(entry)
            self._persist()
        return entry

    def info(self, message: str, data: Mapping[str, Any] | None = None) -> LogEntry:
        return self.record(LogLevel.INFO, message, data)

    def warn(self, message: str, data: Mapping[str, Any] | None = None) -> LogEntry:
        return self.record(LogLevel.WARN, message, data)

    def error(self, message: str, data: Mapping[str, Any] | None = None) -> LogEntry:
        return self.record(LogLevel.ERROR, message, data)

    def entries(self, limit: int | None = None) -> list[LogEntry]:
        """Return entries newest first."""

        with self._lock:
            items = list(self._entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            items = items[:limit_value]
        return items

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._persist()

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._store is None:
            return
        try:
            raw = self._store.get(LOGS_KEY, [])
        except ValueError as exc:
            logger.warning("Starting with an empty activity log: %s", exc)
            return
        if not isinstance(raw, list):
            return
        for payload in raw[: self._entries.maxlen]:
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> LogEntry | None:
        if not isinstance(payload, dict):
            return None
        message = payload.get("message")
        if not isinstance(message, str):
            return None
        try:
            level = LogLevel(payload.get("level"))
        except ValueError:
            return None
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            timestamp = time.time()
        data = payload.get("data")
        return LogEntry(
            timestamp=timestamp,
            level=level,
            message=message,
            data=data if isinstance(data, dict) else None,
        )

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.set(LOGS_KEY, [entry.to_dict() for entry in self._entries])
        except (OSError, TypeError, ValueError) as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist activity log: %s", exc)


__all__ = ["ActivityLog", "LogEntry", "LogLevel"]
