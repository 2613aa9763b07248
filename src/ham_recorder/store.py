"""Flat JSON key-value store backing settings, schedules and logs."""
from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Mapping


logger = logging.getLogger(__name__)


class KeyValueStore:
    """Persist a single JSON object on disk with thread-safety.

    Each top level key is an independent record. Values must be JSON
    serialisable; reads return deep copies so callers cannot mutate the
    cached state behind the lock.

    An unreadable file does not prevent construction. The failure is kept in
    :attr:`load_error` and re-raised as ``ValueError`` by :meth:`get` for
    every record that has not been written since. The first write moves the
    unreadable file aside to ``<name>.corrupt``.
    """

    def __init__(self, path: Path | str | None = Path("data/store.json")) -> None:
        self._path: Path | None = Path(path) if path is not None else None
        self._lock = Lock()
        self._data: dict[str, Any] = {}
        self._load_error: str | None = None
        self._quarantined = False
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._data = self._load()
            except ValueError as exc:
                self._load_error = str(exc)
                logger.error("%s", exc)

    # ------------------------------ properties -----------------------------
    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def load_error(self) -> str | None:
        return self._load_error

    # ------------------------------ operations -----------------------------
    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                if self._load_error is not None:
                    raise ValueError(self._load_error)
                return copy.deepcopy(default)
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, values: Mapping[str, Any]) -> None:
        """Write several records at once with a single flush to disk."""

        snapshot = {key: copy.deepcopy(value) for key, value in values.items()}
        with self._lock:
            self._data.update(snapshot)
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)

    # ----------------------------- implementation --------------------------
    def _quarantine(self) -> None:
        assert self._path is not None
        self._quarantined = True
        if not self._path.exists():
            return
        backup = self._path.with_name(self._path.name + ".corrupt")
        os.replace(self._path, backup)
        logger.warning("Moved unreadable store to %s", backup)

    def _load(self) -> dict[str, Any]:
        assert self._path is not None
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ValueError(f"Failed to load store {self._path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError("Store file must contain a JSON object")
        return payload

    def _save(self) -> None:
        if self._path is None:
            return
        if self._load_error is not None and not self._quarantined:
            self._quarantine()
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)
        logger.debug("Persisted %d records to %s", len(self._data), self._path)


__all__ = ["KeyValueStore"]
