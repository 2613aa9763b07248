"""Translate stored schedules into named wake-up alarms."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable

from .activity_log import ActivityLog
from .alarms import Alarm, AlarmService, FiredAlarm, local_now
from .errors import StaleAlarmRejection
from .schedules import RepeatKind, Schedule, parse_time_of_day

logger = logging.getLogger(__name__)

SCHEDULE_ALARM_PREFIX = "ham-record-"
STOP_ALARM_NAME = "ham-stop-recording"
MAX_ALARM_DRIFT = timedelta(minutes=5)
DAILY_PERIOD = timedelta(days=1)


def alarm_name_for(schedule_id: str) -> str:
    return f"{SCHEDULE_ALARM_PREFIX}{schedule_id}"


def schedule_id_for(alarm_name: str) -> str | None:
    """Return the schedule id encoded in ``alarm_name``, if it is a schedule alarm."""

    if not alarm_name.startswith(SCHEDULE_ALARM_PREFIX):
        return None
    return alarm_name[len(SCHEDULE_ALARM_PREFIX):]


def next_occurrence(start_time: str, now: datetime) -> datetime:
    """Return the next local instant matching ``start_time`` strictly after ``now``."""

    hour, minute = parse_time_of_day(start_time)
    local = now.astimezone().replace(tzinfo=None)
    candidate = local.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate.astimezone()


class ScheduleTranslator:
    """Keeps alarm registrations in step with the schedule list.

    Alarms carry no identity of their own: every registration can be rebuilt
    from the stored schedules, which is what :meth:`restore_all` does after a
    restart.
    """

    def __init__(
        self,
        alarms: AlarmService,
        *,
        activity: ActivityLog | None = None,
        clock: Callable[[], datetime] = local_now,
        max_drift: timedelta = MAX_ALARM_DRIFT,
    ) -> None:
        self._alarms = alarms
        self._activity = activity
        self._clock = clock
        self._max_drift = max_drift

    def schedule_to_alarm(self, schedule: Schedule) -> Alarm | None:
        """Register (or clear, when disabled) the alarm for ``schedule``."""

        name = alarm_name_for(schedule.id)
        if not schedule.enabled:
            self._alarms.clear(name)
            logger.info("Schedule %s disabled; alarm cleared", schedule.id)
            return None
        when = next_occurrence(schedule.start_time, self._clock())
        period = DAILY_PERIOD if schedule.repeat is RepeatKind.DAILY else None
        alarm = self._alarms.create(name, when, period)
        message = (
            f"Alarm created: {schedule.start_time}-{schedule.end_time} ({schedule.repeat.value})"
        )
        details = {
            "alarm_name": name,
            "when": when.isoformat(),
            "frequency": schedule.frequency,
            "mode": schedule.mode,
        }
        if self._activity is not None:
            self._activity.info(message, details)
        else:
            logger.info("%s %s", message, details)
        return alarm

    def clear(self, schedule_id: str) -> bool:
        return self._alarms.clear(alarm_name_for(schedule_id))

    def restore_all(self, schedules: Iterable[Schedule]) -> int:
        """Re-register every enabled schedule and return how many were set."""

        restored = 0
        for schedule in schedules:
            if schedule.enabled and self.schedule_to_alarm(schedule) is not None:
                restored += 1
        return restored

    def next_alarm_time(self) -> datetime | None:
        times = [
            alarm.scheduled_time
            for alarm in self._alarms.get_all()
            if alarm.name.startswith(SCHEDULE_ALARM_PREFIX)
        ]
        return min(times) if times else None

    def check_drift(self, fired: FiredAlarm) -> None:
        """Raise :class:`StaleAlarmRejection` when ``fired`` ran too late or early."""

        drift = fired.drift
        if drift > self._max_drift:
            seconds = drift.total_seconds()
            raise StaleAlarmRejection(
                f"Alarm drift too large ({round(seconds)}s), skipping",
                drift_seconds=seconds,
            )


__all__ = [
    "MAX_ALARM_DRIFT",
    "SCHEDULE_ALARM_PREFIX",
    "STOP_ALARM_NAME",
    "ScheduleTranslator",
    "alarm_name_for",
    "next_occurrence",
    "schedule_id_for",
]
