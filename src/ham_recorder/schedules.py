"""Recording schedule definitions and their persisted collection."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Iterable, Mapping

from .errors import ConfigLoadError
from .store import KeyValueStore

logger = logging.getLogger(__name__)

SCHEDULES_KEY = "schedules"
MINUTES_PER_DAY = 24 * 60

MODES: tuple[str, ...] = ("USB", "LSB", "FM", "WFM", "AM", "CW", "RTTY", "FT8", "FT4", "DV")


class RepeatKind(str, Enum):
    """How often a schedule fires."""

    ONCE = "once"
    DAILY = "daily"


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse ``HH:MM`` into an ``(hour, minute)`` tuple."""

    if not isinstance(value, str):
        raise ValueError("Time of day must be a string in HH:MM format")
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time of day: {value!r}")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValueError(f"Invalid time of day: {value!r}") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Time of day out of range: {value!r}")
    return hour, minute


def normalise_mode(value: str) -> str:
    mode = str(value or "").strip().upper()
    if mode not in MODES:
        raise ValueError(f"Unsupported mode: {value!r}")
    return mode


def compute_duration_minutes(start_time: str, end_time: str) -> int:
    """Return the recording length between two times of day.

    The result is always positive: an end at or before the start is taken
    to cross midnight.
    """

    start_h, start_m = parse_time_of_day(start_time)
    end_h, end_m = parse_time_of_day(end_time)
    diff = (end_h * 60 + end_m) - (start_h * 60 + start_m)
    if diff <= 0:
        diff += MINUTES_PER_DAY
    return diff


@dataclass(frozen=True, slots=True)
class Schedule:
    """A one-shot or daily recording slot."""

    id: str
    start_time: str
    end_time: str
    frequency: int
    mode: str
    data_mode: bool = False
    repeat: RepeatKind = RepeatKind.ONCE
    enabled: bool = True

    def __post_init__(self) -> None:
        identifier = str(self.id or "").strip()
        if not identifier:
            raise ValueError("Schedule id must be provided")
        start_h, start_m = parse_time_of_day(self.start_time)
        end_h, end_m = parse_time_of_day(self.end_time)
        try:
            frequency = int(self.frequency)
        except (TypeError, ValueError) as exc:
            raise ValueError("Frequency must be an integer number of Hz") from exc
        if frequency <= 0:
            raise ValueError("Frequency must be positive")
        object.__setattr__(self, "id", identifier)
        object.__setattr__(self, "start_time", f"{start_h:02d}:{start_m:02d}")
        object.__setattr__(self, "end_time", f"{end_h:02d}:{end_m:02d}")
        object.__setattr__(self, "frequency", frequency)
        object.__setattr__(self, "mode", normalise_mode(self.mode))
        object.__setattr__(self, "data_mode", bool(self.data_mode))
        object.__setattr__(self, "repeat", RepeatKind(self.repeat))
        object.__setattr__(self, "enabled", bool(self.enabled))

    @property
    def duration_minutes(self) -> int:
        return compute_duration_minutes(self.start_time, self.end_time)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Schedule":
        return cls(
            id=data.get("id", ""),
            start_time=data.get("start_time", ""),
            end_time=data.get("end_time", ""),
            frequency=data.get("frequency", 0),
            mode=data.get("mode", ""),
            data_mode=data.get("data_mode", False),
            repeat=data.get("repeat", RepeatKind.ONCE.value),
            enabled=data.get("enabled", True),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "frequency": self.frequency,
            "mode": self.mode,
            "data_mode": self.data_mode,
            "repeat": self.repeat.value,
            "enabled": self.enabled,
        }


class ScheduleBook:
    """Ordered schedule list persisted as a single record keyed by id."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = Lock()

    def list(self) -> list[Schedule]:
        try:
            raw = self._store.get(SCHEDULES_KEY, [])
        except ValueError as exc:
            raise ConfigLoadError(f"Unable to read schedules: {exc}") from exc
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed schedules record")
            return []
        schedules: list[Schedule] = []
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            try:
                schedules.append(Schedule.from_dict(item))
            except ValueError as exc:
                logger.warning("Skipping invalid stored schedule %r: %s", item.get("id"), exc)
        return schedules

    def get(self, schedule_id: str) -> Schedule | None:
        for schedule in self.list():
            if schedule.id == schedule_id:
                return schedule
        return None

    def replace_all(self, schedules: Iterable[Schedule]) -> list[Schedule]:
        """Persist ``schedules`` wholesale, replacing the stored list."""

        items = list(schedules)
        seen: set[str] = set()
        for schedule in items:
            if schedule.id in seen:
                raise ValueError(f"Duplicate schedule id: {schedule.id}")
            seen.add(schedule.id)
        self._store.set(SCHEDULES_KEY, [schedule.to_dict() for schedule in items])
        return items

    def upsert(self, schedule: Schedule) -> Schedule:
        with self._lock:
            try:
                schedules = self.list()
            except ConfigLoadError as exc:
                logger.warning("Replacing unreadable schedules: %s", exc)
                schedules = []
            for index, existing in enumerate(schedules):
                if existing.id == schedule.id:
                    schedules[index] = schedule
                    break
            else:
                schedules.append(schedule)
            self.replace_all(schedules)
        return schedule

    def delete(self, schedule_id: str) -> bool:
        with self._lock:
            schedules = self.list()
            remaining = [item for item in schedules if item.id != schedule_id]
            if len(remaining) == len(schedules):
                return False
            self.replace_all(remaining)
        return True


__all__ = [
    "MODES",
    "RepeatKind",
    "Schedule",
    "ScheduleBook",
    "compute_duration_minutes",
    "normalise_mode",
    "parse_time_of_day",
]
