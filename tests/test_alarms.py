import asyncio
from datetime import timedelta

import pytest

from ham_recorder.alarms import APSchedulerAlarmService, FiredAlarm, local_now


def test_one_shot_alarm_fires_once_and_is_forgotten(fake_alarms):
    fired: list[FiredAlarm] = []

    async def handler(alarm: FiredAlarm) -> None:
        fired.append(alarm)

    when = local_now() + timedelta(minutes=10)
    fake_alarms.set_handler(handler)
    fake_alarms.create("ham-record-1", when)

    async def runner():
        await fake_alarms.fire("ham-record-1", fired_at=when + timedelta(seconds=3))
        await fake_alarms.fire("ham-record-1", fired_at=when + timedelta(seconds=4))

    asyncio.run(runner())
    assert len(fired) == 1
    assert fired[0].scheduled_time == when
    assert fired[0].drift == timedelta(seconds=3)
    assert fake_alarms.get("ham-record-1") is None


def test_periodic_alarm_advances_scheduled_time(fake_alarms):
    fired: list[FiredAlarm] = []

    async def handler(alarm: FiredAlarm) -> None:
        fired.append(alarm)

    when = local_now()
    period = timedelta(days=1)
    fake_alarms.set_handler(handler)
    fake_alarms.create("ham-record-daily", when, period)

    async def runner():
        await fake_alarms.fire("ham-record-daily", fired_at=when + timedelta(seconds=1))
        # Two missed days collapse into the latest occurrence.
        await fake_alarms.fire("ham-record-daily", fired_at=when + 3 * period + timedelta(seconds=2))

    asyncio.run(runner())
    assert [alarm.scheduled_time for alarm in fired] == [when, when + 3 * period]
    assert fake_alarms.get("ham-record-daily").scheduled_time == when + 4 * period


def test_create_replaces_existing_alarm(fake_alarms):
    first = fake_alarms.create("ham-stop-recording", local_now() + timedelta(minutes=1))
    second = fake_alarms.create("ham-stop-recording", local_now() + timedelta(minutes=5))
    assert fake_alarms.get("ham-stop-recording") == second
    assert first != second
    assert len(fake_alarms.get_all()) == 1
    assert fake_alarms.clear("ham-stop-recording") is True
    assert fake_alarms.clear("ham-stop-recording") is False


def test_non_positive_period_rejected(fake_alarms):
    with pytest.raises(ValueError):
        fake_alarms.create("x", local_now(), timedelta(0))


def test_apscheduler_service_fires_on_event_loop():
    fired: list[FiredAlarm] = []
    done = None

    async def handler(alarm: FiredAlarm) -> None:
        fired.append(alarm)
        done.set()

    async def runner():
        nonlocal done
        done = asyncio.Event()
        service = APSchedulerAlarmService()
        service.set_handler(handler)
        service.start()
        try:
            service.create("ham-record-soon", local_now() + timedelta(milliseconds=200))
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            service.shutdown()
        return service

    service = asyncio.run(runner())
    assert [alarm.name for alarm in fired] == ["ham-record-soon"]
    assert fired[0].drift < timedelta(seconds=5)
    assert service.get("ham-record-soon") is None


def test_apscheduler_service_clear_prevents_fire():
    fired: list[FiredAlarm] = []

    async def handler(alarm: FiredAlarm) -> None:
        fired.append(alarm)

    async def runner():
        service = APSchedulerAlarmService()
        service.set_handler(handler)
        service.start()
        try:
            service.create("ham-stop-recording", local_now() + timedelta(milliseconds=200))
            assert service.clear("ham-stop-recording") is True
            await asyncio.sleep(0.5)
        finally:
            service.shutdown()

    asyncio.run(runner())
    assert fired == []
