from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import pytest

from ham_recorder.activity_log import ActivityLog
from ham_recorder.alarms import Alarm, AlarmService
from ham_recorder.capture.proxy import CaptureContext, CaptureContextProxy
from ham_recorder.channel import ConnectPolicy
from ham_recorder.delivery import FileDelivery
from ham_recorder.engine import RecordingEngine
from ham_recorder.errors import ChannelConnectionError
from ham_recorder.schedules import ScheduleBook
from ham_recorder.settings import SettingsStore
from ham_recorder.store import KeyValueStore
from ham_recorder.translator import ScheduleTranslator


class FakeAlarmService(AlarmService):
    """Alarm service whose alarms only fire when a test says so."""

    def __init__(self) -> None:
        super().__init__()
        self.scheduled: list[Alarm] = []
        self.unscheduled: list[str] = []

    def _schedule(self, alarm: Alarm) -> None:
        self.scheduled.append(alarm)

    def _unschedule(self, name: str) -> None:
        self.unscheduled.append(name)

    async def fire(self, name: str, fired_at: datetime | None = None) -> None:
        await self._dispatch(name, fired_at)


class FakeCaptureContext(CaptureContext):
    def __init__(self, sink: Callable[[Any], None], on_command: Callable | None) -> None:
        self.sink = sink
        self.on_command = on_command
        self.sent: list[Any] = []
        self.closed = False

    @property
    def alive(self) -> bool:
        return not self.closed

    def send(self, message: Any) -> None:
        self.sent.append(message)
        if self.on_command is not None:
            self.on_command(self, message)

    def emit(self, event: Any) -> None:
        self.sink(event)

    async def aclose(self) -> None:
        self.closed = True


class FakeCaptureFactory:
    def __init__(self, on_command: Callable | None = None) -> None:
        self.on_command = on_command
        self.contexts: list[FakeCaptureContext] = []

    async def __call__(self, sink: Callable[[Any], None]) -> FakeCaptureContext:
        context = FakeCaptureContext(sink, self.on_command)
        self.contexts.append(context)
        return context

    @property
    def last(self) -> FakeCaptureContext:
        return self.contexts[-1]

    @property
    def commands(self) -> list[Any]:
        return [message for context in self.contexts for message in context.sent]


class FakeChannel:
    """Scripted stand-in for the WebSocket command channel."""

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        *,
        connect_error: Exception | None = None,
    ) -> None:
        self.responses = responses if responses is not None else {
            "setFreqResult": {"type": "setFreqResult", "success": True},
            "setModeResult": {"type": "setModeResult", "success": True},
        }
        self.connect_error = connect_error
        self.calls: list[tuple[Any, ...]] = []
        self.connected = False

    async def connect(self, url: str, policy: ConnectPolicy | None = None) -> None:
        self.calls.append(("connect", url))
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def send_command(self, command: dict[str, Any], expected_tag: str, *, timeout: float) -> dict:
        self.calls.append(("send", dict(command)))
        response = self.responses[expected_tag]
        if isinstance(response, Exception):
            raise response
        return response

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.connected = False

    @property
    def sent_types(self) -> list[str]:
        return [call[1]["type"] for call in self.calls if call[0] == "send"]


class EngineHarness:
    """Wires a RecordingEngine to fakes backed by a temporary store."""

    def __init__(
        self,
        tmp_path: Path,
        *,
        channel: FakeChannel | None = None,
        on_command: Callable | None = None,
        settings: dict[str, Any] | None = None,
        store_text: str | None = None,
        **engine_options: Any,
    ) -> None:
        if store_text is not None:
            (tmp_path / "store.json").write_text(store_text)
        self.store = KeyValueStore(tmp_path / "store.json")
        self.activity = ActivityLog(self.store)
        self.settings = SettingsStore(self.store)
        if store_text is None:
            self.settings.update({"device_id": "1", **(settings or {})})
        self.schedules = ScheduleBook(self.store)
        self.alarms = FakeAlarmService()
        self.translator = ScheduleTranslator(self.alarms, activity=self.activity)
        self.capture_factory = FakeCaptureFactory(on_command)
        self.capture = CaptureContextProxy(self.capture_factory, spool_dir=tmp_path / "spool")
        self.delivery = FileDelivery(tmp_path / "downloads")
        self.channels: list[Any] = []
        self._channel = channel or FakeChannel()

        def channel_factory() -> Any:
            candidate = self._channel if not self.channels else FakeChannel(
                connect_error=getattr(self._channel, "connect_error", None)
            )
            self.channels.append(candidate)
            return candidate

        options = {
            "command_delay": 0.0,
            "stop_grace": 0.2,
            "tick_interval": 0.05,
        }
        options.update(engine_options)
        self.engine = RecordingEngine(
            settings=self.settings,
            schedules=self.schedules,
            activity=self.activity,
            alarms=self.alarms,
            translator=self.translator,
            capture=self.capture,
            delivery=self.delivery,
            channel_factory=channel_factory,
            **options,
        )
        self.states: list[str] = []
        self.engine.add_state_listener(lambda previous, current: self.states.append(current.value))

    @property
    def channel(self) -> Any:
        return self.channels[0]

    def messages(self) -> list[str]:
        return [entry.message for entry in self.activity.entries()]


@pytest.fixture
def make_engine(tmp_path: Path) -> Callable[..., EngineHarness]:
    def _factory(**kwargs: Any) -> EngineHarness:
        return EngineHarness(tmp_path, **kwargs)

    return _factory


@pytest.fixture
def fake_channel_cls() -> type[FakeChannel]:
    return FakeChannel


@pytest.fixture
def fake_alarms() -> FakeAlarmService:
    return FakeAlarmService()


@pytest.fixture
def refused_connection() -> ChannelConnectionError:
    return ChannelConnectionError("WebSocket connection failed after 3 attempts: refused", attempts=3)


@pytest.fixture
def capture_factory_cls() -> type[FakeCaptureFactory]:
    return FakeCaptureFactory
