"""Named wake-up alarms backed by APScheduler."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True, slots=True)
class Alarm:
    """A registered wake-up and its next scheduled occurrence."""

    name: str
    scheduled_time: datetime
    period: timedelta | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "scheduled_time": self.scheduled_time.isoformat(),
            "period_minutes": self.period.total_seconds() / 60 if self.period else None,
        }


@dataclass(frozen=True, slots=True)
class FiredAlarm:
    """Delivered to the handler each time an alarm goes off."""

    name: str
    scheduled_time: datetime
    fired_at: datetime

    @property
    def drift(self) -> timedelta:
        return abs(self.fired_at - self.scheduled_time)


AlarmHandler = Callable[[FiredAlarm], Awaitable[None]]


class AlarmService:
    """Base wake-up facility: registers named alarms and dispatches fires.

    Subclasses schedule the actual timers and call :meth:`_dispatch` when one
    goes off. Registering a name twice replaces the earlier alarm.
    """

    def __init__(self) -> None:
        self._alarms: dict[str, Alarm] = {}
        self._handler: AlarmHandler | None = None

    def set_handler(self, handler: AlarmHandler | None) -> None:
        self._handler = handler

    def start(self) -> None:
        """Begin delivering alarms."""

    def shutdown(self) -> None:
        """Stop delivering alarms."""

    def create(self, name: str, when: datetime, period: timedelta | None = None) -> Alarm:
        if period is not None and period <= timedelta(0):
            raise ValueError("Alarm period must be positive")
        if when.tzinfo is None:
            when = when.astimezone()
        alarm = Alarm(name=name, scheduled_time=when, period=period)
        self._schedule(alarm)
        self._alarms[name] = alarm
        logger.debug("Alarm %s set for %s", name, when.isoformat())
        return alarm

    def clear(self, name: str) -> bool:
        alarm = self._alarms.pop(name, None)
        self._unschedule(name)
        return alarm is not None

    def get(self, name: str) -> Alarm | None:
        return self._alarms.get(name)

    def get_all(self) -> list[Alarm]:
        return list(self._alarms.values())

    # ---- hooks ----
    def _schedule(self, alarm: Alarm) -> None:
        raise NotImplementedError

    def _unschedule(self, name: str) -> None:
        raise NotImplementedError

    async def _dispatch(self, name: str, fired_at: datetime | None = None) -> None:
        alarm = self._alarms.get(name)
        if alarm is None:
            logger.debug("Ignoring fire of unknown alarm %s", name)
            return
        now = fired_at or local_now()
        scheduled = alarm.scheduled_time
        if alarm.period is None:
            self._alarms.pop(name, None)
        else:
            if now > scheduled:
                # Missed periods are coalesced into the latest due occurrence.
                missed = (now - scheduled) // alarm.period
                scheduled = scheduled + missed * alarm.period
            self._alarms[name] = replace(alarm, scheduled_time=scheduled + alarm.period)
        handler = self._handler
        if handler is None:
            logger.warning("Alarm %s fired with no handler installed", name)
            return
        try:
            await handler(FiredAlarm(name=name, scheduled_time=scheduled, fired_at=now))
        except Exception:  # pragma: no cover - handler failure
            logger.exception("Alarm handler failed for %s", name)


class APSchedulerAlarmService(AlarmService):
    """Alarm service running on the asyncio event loop via APScheduler."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        super().__init__()
        self._scheduler = scheduler or AsyncIOScheduler(
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                # Late fires still run so the drift check can reject them.
                "misfire_grace_time": None,
            }
        )

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _schedule(self, alarm: Alarm) -> None:
        if alarm.period is None:
            trigger = DateTrigger(run_date=alarm.scheduled_time)
        else:
            trigger = IntervalTrigger(
                seconds=alarm.period.total_seconds(),
                start_date=alarm.scheduled_time,
            )
        self._scheduler.add_job(
            self._dispatch,
            trigger=trigger,
            args=[alarm.name],
            id=alarm.name,
            name=alarm.name,
            replace_existing=True,
        )

    def _unschedule(self, name: str) -> None:
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            pass


__all__ = [
    "Alarm",
    "AlarmHandler",
    "AlarmService",
    "APSchedulerAlarmService",
    "FiredAlarm",
    "local_now",
]
