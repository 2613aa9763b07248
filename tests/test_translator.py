from datetime import datetime, timedelta

import pytest

from ham_recorder.activity_log import ActivityLog
from ham_recorder.alarms import FiredAlarm
from ham_recorder.errors import StaleAlarmRejection
from ham_recorder.schedules import Schedule
from ham_recorder.translator import (
    ScheduleTranslator,
    alarm_name_for,
    next_occurrence,
    schedule_id_for,
)

NOW = datetime(2024, 6, 1, 12, 0).astimezone()


def _schedule(**overrides) -> Schedule:
    values = {
        "id": "42",
        "start_time": "18:00",
        "end_time": "18:30",
        "frequency": 14074000,
        "mode": "FT8",
        "repeat": "once",
    }
    values.update(overrides)
    return Schedule(**values)


def test_alarm_names_round_trip():
    assert alarm_name_for("42") == "ham-record-42"
    assert schedule_id_for("ham-record-42") == "42"
    assert schedule_id_for("ham-stop-recording") is None


def test_next_occurrence_today_or_tomorrow():
    later = next_occurrence("18:00", NOW)
    assert (later.hour, later.minute) == (18, 0)
    assert later.date() == NOW.date()

    earlier = next_occurrence("09:15", NOW)
    assert (earlier.hour, earlier.minute) == (9, 15)
    assert earlier.date() == NOW.date() + timedelta(days=1)

    exact = next_occurrence("12:00", NOW)
    assert exact.date() == NOW.date() + timedelta(days=1)


def test_one_shot_schedule_registers_single_alarm(fake_alarms):
    translator = ScheduleTranslator(fake_alarms, clock=lambda: NOW)
    alarm = translator.schedule_to_alarm(_schedule())
    assert alarm is not None
    assert alarm.name == "ham-record-42"
    assert alarm.period is None
    assert alarm.scheduled_time.hour == 18


def test_daily_schedule_repeats_every_day(fake_alarms):
    activity = ActivityLog(None)
    translator = ScheduleTranslator(fake_alarms, activity=activity, clock=lambda: NOW)
    alarm = translator.schedule_to_alarm(_schedule(repeat="daily"))
    assert alarm.period == timedelta(days=1)
    assert activity.entries()[0].message == "Alarm created: 18:00-18:30 (daily)"


def test_reregistration_overwrites_and_disable_clears(fake_alarms):
    translator = ScheduleTranslator(fake_alarms, clock=lambda: NOW)
    translator.schedule_to_alarm(_schedule())
    translator.schedule_to_alarm(_schedule(start_time="20:00"))
    assert len(fake_alarms.get_all()) == 1
    assert fake_alarms.get("ham-record-42").scheduled_time.hour == 20

    assert translator.schedule_to_alarm(_schedule(enabled=False)) is None
    assert fake_alarms.get("ham-record-42") is None


def test_restore_all_skips_disabled(fake_alarms):
    translator = ScheduleTranslator(fake_alarms, clock=lambda: NOW)
    restored = translator.restore_all(
        [_schedule(id="a"), _schedule(id="b", enabled=False), _schedule(id="c", start_time="13:00")]
    )
    assert restored == 2
    assert sorted(alarm.name for alarm in fake_alarms.get_all()) == ["ham-record-a", "ham-record-c"]


def test_next_alarm_time_ignores_stop_alarm(fake_alarms):
    translator = ScheduleTranslator(fake_alarms, clock=lambda: NOW)
    assert translator.next_alarm_time() is None
    translator.schedule_to_alarm(_schedule(id="a", start_time="19:00"))
    translator.schedule_to_alarm(_schedule(id="b", start_time="13:00"))
    fake_alarms.create("ham-stop-recording", NOW + timedelta(minutes=1))
    assert translator.next_alarm_time().hour == 13


def test_drift_check(fake_alarms):
    translator = ScheduleTranslator(fake_alarms, clock=lambda: NOW)
    on_time = FiredAlarm("ham-record-1", NOW, NOW + timedelta(minutes=4, seconds=59))
    translator.check_drift(on_time)

    late = FiredAlarm("ham-record-1", NOW, NOW + timedelta(minutes=6))
    with pytest.raises(StaleAlarmRejection) as excinfo:
        translator.check_drift(late)
    assert excinfo.value.drift_seconds == 360
    assert "360s" in str(excinfo.value)
