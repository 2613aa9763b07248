"""Recorder settings and helpers derived from them."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from threading import Lock
from typing import Any, Mapping

from .errors import ConfigLoadError
from .store import KeyValueStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"

DEFAULT_CHANNEL_HOST = "127.0.0.1"
DEFAULT_CHANNEL_PORT = 17800
DEFAULT_CHANNEL_PATH = "/ws"
DEFAULT_FILENAME_TEMPLATE = "{date}_{time}_{freq}_{mode}"


@dataclass(frozen=True, slots=True)
class Settings:
    """User configurable connection, device and naming options."""

    channel_host: str = DEFAULT_CHANNEL_HOST
    channel_port: int = DEFAULT_CHANNEL_PORT
    channel_path: str = DEFAULT_CHANNEL_PATH
    rig_port: int = 0
    device_id: str = ""
    device_label: str = ""
    filename_template: str = DEFAULT_FILENAME_TEMPLATE

    def __post_init__(self) -> None:
        host = str(self.channel_host).strip()
        if not host:
            raise ValueError("Channel host must be a non-empty string")
        try:
            port = int(self.channel_port)
            rig_port = int(self.rig_port)
        except (TypeError, ValueError) as exc:
            raise ValueError("Ports must be integers") from exc
        if not (1 <= port <= 65535):
            raise ValueError("Channel port must be between 1 and 65535")
        if rig_port < 0:
            raise ValueError("Rig port must not be negative")
        template = str(self.filename_template)
        if not template.strip():
            raise ValueError("Filename template must not be empty")
        object.__setattr__(self, "channel_host", host)
        object.__setattr__(self, "channel_port", port)
        object.__setattr__(self, "channel_path", str(self.channel_path or ""))
        object.__setattr__(self, "rig_port", rig_port)
        object.__setattr__(self, "device_id", str(self.device_id or ""))
        object.__setattr__(self, "device_label", str(self.device_label or ""))
        object.__setattr__(self, "filename_template", template)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        known = {field.name for field in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def merged(self, update: Mapping[str, Any]) -> "Settings":
        """Return a copy with ``update`` applied over the current values."""

        payload = self.to_dict()
        payload.update({key: value for key, value in update.items() if value is not None})
        return Settings.from_dict(payload)


DEFAULT_SETTINGS = Settings()


class SettingsStore:
    """Read-modify-write access to the persisted settings record."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = Lock()

    def load(self) -> Settings:
        """Return stored settings merged over the defaults."""

        try:
            raw = self._store.get(SETTINGS_KEY, {})
        except ValueError as exc:
            raise ConfigLoadError(f"Unable to read settings: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise ConfigLoadError("Stored settings must be a JSON object")
        try:
            return DEFAULT_SETTINGS.merged(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"Invalid stored settings: {exc}") from exc

    def update(self, values: Mapping[str, Any]) -> Settings:
        """Merge a partial update over the stored values and persist it.

        An unreadable stored record is replaced, starting from the defaults.
        """

        with self._lock:
            try:
                current = self.load()
            except ConfigLoadError as exc:
                logger.warning("Replacing unreadable settings: %s", exc)
                current = DEFAULT_SETTINGS
            updated = current.merged(values)
            self._store.set(SETTINGS_KEY, updated.to_dict())
        return updated


def build_channel_url(settings: Settings) -> str:
    """Return the WebSocket URL of the rig control bridge."""

    path = settings.channel_path or "/"
    if not path.startswith("/"):
        path = "/" + path
    return f"ws://{settings.channel_host}:{settings.channel_port}{path}"


def build_filename(
    template: str,
    frequency: int,
    mode: str,
    now: datetime | None = None,
) -> str:
    """Expand ``{date}``, ``{time}``, ``{freq}`` and ``{mode}`` in ``template``.

    Each placeholder is substituted once, using local time for the date
    (``YYYYMMDD``) and time (``HHMMSS``) fields.
    """

    moment = now or datetime.now()
    return (
        template.replace("{date}", moment.strftime("%Y%m%d"), 1)
        .replace("{time}", moment.strftime("%H%M%S"), 1)
        .replace("{freq}", str(frequency), 1)
        .replace("{mode}", mode, 1)
    )


__all__ = [
    "DEFAULT_SETTINGS",
    "Settings",
    "SettingsStore",
    "build_channel_url",
    "build_filename",
]
