"""Recording orchestration: tune the rig, capture audio, deliver the file."""
from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from .activity_log import ActivityLog
from .alarms import AlarmService, FiredAlarm, local_now
from .capture.encoder import DEFAULT_MIME_TYPE
from .capture.protocol import CaptureProgress, CaptureResult, StartCapture, StopCapture
from .capture.proxy import CaptureContextProxy
from .channel import DEFAULT_CONNECT_POLICY, CommandChannel, ConnectPolicy
from .delivery import FileDelivery
from .errors import (
    BusyRejection,
    CaptureContextError,
    CaptureFailedError,
    ChannelError,
    ConfigLoadError,
    DeliveryError,
    DeviceMissingError,
    ProtocolError,
    RecorderError,
    StaleAlarmRejection,
)
from .schedules import RepeatKind, Schedule, ScheduleBook, normalise_mode
from .settings import Settings, SettingsStore, build_channel_url, build_filename
from .translator import STOP_ALARM_NAME, ScheduleTranslator, schedule_id_for

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 5.0
COMMAND_DELAY = 0.2
STOP_GRACE = 2.0
TICK_INTERVAL = 1.0
TEST_CONNECT_POLICY = ConnectPolicy(timeout=5.0, max_attempts=1, delay=0.0)


class EngineState(str, Enum):
    """Phases of a recording flow."""

    IDLE = "idle"
    CONNECTING = "connecting"
    TUNING_FREQUENCY = "tuning-frequency"
    TUNING_MODE = "tuning-mode"
    RECORDING = "recording"
    SAVING = "saving"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class RecordingParams:
    """Parameters for one recording flow."""

    frequency: int
    mode: str
    duration_minutes: float
    data_mode: bool = False

    def __post_init__(self) -> None:
        try:
            frequency = int(self.frequency)
            duration = float(self.duration_minutes)
        except (TypeError, ValueError) as exc:
            raise ValueError("Frequency and duration must be numeric") from exc
        if frequency <= 0:
            raise ValueError("Frequency must be positive")
        if not math.isfinite(duration) or duration <= 0:
            raise ValueError("Duration must be a positive number of minutes")
        object.__setattr__(self, "frequency", frequency)
        object.__setattr__(self, "mode", normalise_mode(self.mode))
        object.__setattr__(self, "duration_minutes", duration)
        object.__setattr__(self, "data_mode", bool(self.data_mode))

    @classmethod
    def from_schedule(cls, schedule: Schedule) -> "RecordingParams":
        return cls(
            frequency=schedule.frequency,
            mode=schedule.mode,
            duration_minutes=schedule.duration_minutes,
            data_mode=schedule.data_mode,
        )

    @property
    def duration_ms(self) -> int:
        return int(round(self.duration_minutes * 60_000))


@dataclass(slots=True)
class EngineStatus:
    """Read-only snapshot consumed by status displays."""

    state: EngineState
    next_alarm: datetime | None
    frequency: int | None
    mode: str | None
    elapsed: int | None
    total: int | None
    error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "next_alarm": self.next_alarm.isoformat() if self.next_alarm else None,
            "frequency": self.frequency,
            "mode": self.mode,
            "elapsed": self.elapsed,
            "total": self.total,
            "error": self.error,
        }


StateListener = Callable[[EngineState, EngineState], None]


class RecordingEngine:
    """Single-flow state machine driving the channel and the capture context.

    Only the engine mutates its state. A flow is started by an alarm or a
    manual request and ends in ``idle`` or ``error``; a later flow clears a
    previous ``error`` automatically. Two independent timers bound a capture:
    the capture context's own auto-stop and the ``ham-stop-recording``
    backup alarm armed here.
    """

    def __init__(
        self,
        *,
        settings: SettingsStore,
        schedules: ScheduleBook,
        activity: ActivityLog,
        alarms: AlarmService,
        translator: ScheduleTranslator,
        capture: CaptureContextProxy,
        delivery: FileDelivery,
        channel_factory: Callable[[], CommandChannel] = CommandChannel,
        connect_policy: ConnectPolicy = DEFAULT_CONNECT_POLICY,
        command_timeout: float = COMMAND_TIMEOUT,
        command_delay: float = COMMAND_DELAY,
        stop_grace: float = STOP_GRACE,
        tick_interval: float = TICK_INTERVAL,
        mime_type: str = DEFAULT_MIME_TYPE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._schedules = schedules
        self._activity = activity
        self._alarms = alarms
        self._translator = translator
        self._capture = capture
        self._delivery = delivery
        self._channel_factory = channel_factory
        self._channel = channel_factory()
        self._connect_policy = connect_policy
        self._command_timeout = command_timeout
        self._command_delay = command_delay
        self._stop_grace = stop_grace
        self._tick_interval = tick_interval
        self._mime_type = mime_type
        self._clock = clock

        self._state = EngineState.IDLE
        self._frequency: int | None = None
        self._mode: str | None = None
        self._elapsed: int | None = None
        self._total: int | None = None
        self._error: str | None = None

        self._session_id: str | None = None
        self._recording_started = 0.0
        self._recording_done: asyncio.Event | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._events_task: asyncio.Task[None] | None = None
        self._flow_tasks: set[asyncio.Task[None]] = set()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state not in (EngineState.IDLE, EngineState.ERROR)

    @property
    def channel(self) -> CommandChannel:
        return self._channel

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(previous, current)`` on every state change."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def get_status(self) -> EngineStatus:
        return EngineStatus(
            state=self._state,
            next_alarm=self._translator.next_alarm_time(),
            frequency=self._frequency,
            mode=self._mode,
            elapsed=self._elapsed,
            total=self._total,
            error=self._error,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, *, restore_alarms: bool = True) -> None:
        """Install the alarm handler, consume capture events and restore alarms."""

        self._alarms.set_handler(self.handle_alarm)
        if self._events_task is None:
            self._events_task = asyncio.create_task(
                self._consume_events(), name="recording-engine-events"
            )
        if restore_alarms:
            self.restore_alarms()

    def restore_alarms(self) -> int:
        """Re-register alarms for stored schedules; return how many were armed."""

        try:
            schedules = self._schedules.list()
        except ConfigLoadError as exc:
            self._activity.error("Failed to load schedules", {"error": str(exc)})
            return 0
        restored = self._translator.restore_all(schedules)
        self._activity.info(f"Restored {len(schedules)} schedule(s)", {"enabled": restored})
        return restored

    async def aclose(self) -> None:
        self._alarms.set_handler(None)
        self._stop_ticker()
        tasks = [task for task in (self._events_task, *self._flow_tasks) if task is not None]
        self._events_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - handler failure
                logger.exception("Engine task failed during shutdown")
        await self._channel.disconnect()
        await self._capture.close()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def reset(self) -> bool:
        """Return from ``error`` to ``idle``; no-op in any other state."""

        if self._state is not EngineState.ERROR:
            return False
        logger.info("Resetting error state to idle")
        self._set_state(EngineState.IDLE)
        return True

    def request_flow(self, params: RecordingParams) -> asyncio.Task[None]:
        """Start a manual flow in the background and return its task."""

        if self.busy:
            raise BusyRejection(f"Recorder is busy ({self._state.value})")
        self._activity.info(
            "Manual recording triggered",
            {
                "frequency": params.frequency,
                "mode": params.mode,
                "duration_minutes": params.duration_minutes,
            },
        )
        task = asyncio.create_task(self.run_flow(params), name="recording-flow")
        self._flow_tasks.add(task)
        task.add_done_callback(self._flow_tasks.discard)
        return task

    async def run_flow(self, params: RecordingParams) -> None:
        """Run one recording flow; failures end in ``error`` and never raise."""

        if self._state is EngineState.ERROR:
            self.reset()
        try:
            self._ensure_idle()
        except BusyRejection as exc:
            self._activity.warn(
                "Recording flow skipped: already busy", {"state": self._state.value}
            )
            logger.debug("%s", exc)
            return
        try:
            await self._run_flow(params)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - unexpected failure
            logger.exception("Recording flow crashed")
            self._fail(f"Recording flow crashed: {exc}")

    async def stop(self) -> None:
        """Stop a capture gracefully, or force-reset from ``error``."""

        self._alarms.clear(STOP_ALARM_NAME)
        self._stop_ticker()
        if self._state is EngineState.ERROR:
            self._activity.info("Force reset from error state")
            self._session_id = None
            await self._channel.disconnect()
            await self._capture.close()
            self._set_state(EngineState.IDLE)
            return
        if self._state is not EngineState.RECORDING:
            self._activity.warn("Stop requested but not recording")
            return
        await self._graceful_stop("Force-closing capture context and resetting state")

    async def test_connection(self) -> dict[str, Any]:
        """Open the channel once on a separate connection and close it again."""

        channel = self._channel_factory()
        try:
            url = build_channel_url(self._settings.load())
            await channel.connect(url, TEST_CONNECT_POLICY)
        except RecorderError as exc:
            self._activity.error(f"Connection test failed: {exc}")
            return {"success": False, "error": str(exc)}
        finally:
            await channel.disconnect()
        self._activity.info(f"Connection test successful: {url}")
        return {"success": True}

    # ------------------------------------------------------------------
    # Schedules and alarms
    # ------------------------------------------------------------------
    def save_schedule(self, schedule: Schedule) -> Schedule:
        """Create or replace ``schedule`` and (re)register its alarm."""

        self._schedules.upsert(schedule)
        self._translator.schedule_to_alarm(schedule)
        return schedule

    def delete_schedule(self, schedule_id: str) -> bool:
        self._translator.clear(schedule_id)
        removed = self._schedules.delete(schedule_id)
        if removed:
            self._activity.info(f"Schedule deleted: {schedule_id}")
        return removed

    async def handle_alarm(self, fired: FiredAlarm) -> None:
        """Dispatch a fired alarm to the watchdog or to a scheduled flow."""

        if fired.name == STOP_ALARM_NAME:
            await self._on_watchdog()
            return
        schedule_id = schedule_id_for(fired.name)
        if schedule_id is None:
            logger.debug("Ignoring unrelated alarm %s", fired.name)
            return
        self._activity.info(f"Alarm fired: {schedule_id}")
        try:
            self._translator.check_drift(fired)
        except StaleAlarmRejection as exc:
            self._activity.warn(str(exc), {"schedule_id": schedule_id})
            return
        try:
            schedule = self._schedules.get(schedule_id)
        except ConfigLoadError as exc:
            self._activity.error("Failed to load schedules", {"error": str(exc)})
            return
        if schedule is None:
            self._activity.warn(f"Schedule not found: {schedule_id}")
            return
        if schedule.repeat is RepeatKind.ONCE:
            self._schedules.delete(schedule_id)
            self._translator.clear(schedule_id)
            self._activity.info(f"One-shot schedule removed: {schedule_id}")
        await self.run_flow(RecordingParams.from_schedule(schedule))

    # ------------------------------------------------------------------
    # Flow implementation
    # ------------------------------------------------------------------
    def _ensure_idle(self) -> None:
        if self._state is not EngineState.IDLE:
            raise BusyRejection(f"Recorder is busy ({self._state.value})")

    async def _run_flow(self, params: RecordingParams) -> None:
        try:
            settings = self._settings.load()
        except ConfigLoadError as exc:
            self._activity.error("Failed to load settings", {"error": str(exc)})
            self._set_state(EngineState.ERROR, "Failed to load settings")
            return

        url = build_channel_url(settings)
        self._activity.info(
            f"Starting recording flow: {url}",
            {"frequency": params.frequency, "mode": params.mode},
        )

        self._set_state(EngineState.CONNECTING)
        try:
            await self._channel.connect(url, self._connect_policy)
        except ChannelError as exc:
            self._fail(f"WebSocket connection failed: {exc}")
            return
        self._activity.info("WebSocket connected")

        self._set_state(EngineState.TUNING_FREQUENCY)
        try:
            await self._tune(
                {"type": "setFreq", "port": settings.rig_port, "freq": params.frequency},
                "setFreqResult",
            )
        except ChannelError as exc:
            self._fail(f"setFreq failed: {exc}")
            await self._channel.disconnect()
            return
        self._frequency = params.frequency
        self._activity.info(f"Frequency set: {params.frequency} Hz")

        await asyncio.sleep(self._command_delay)

        self._set_state(EngineState.TUNING_MODE)
        try:
            await self._tune(
                {
                    "type": "setMode",
                    "port": settings.rig_port,
                    "mode": params.mode,
                    "data": params.data_mode,
                },
                "setModeResult",
            )
        except ChannelError as exc:
            self._fail(f"setMode failed: {exc}")
            await self._channel.disconnect()
            return
        self._mode = params.mode
        self._activity.info(
            f"Mode set: {params.mode} (data={str(params.data_mode).lower()})"
        )

        await self._channel.disconnect()
        await self._begin_capture(settings, params)

    async def _tune(self, command: dict[str, Any], expected_tag: str) -> dict[str, Any]:
        response = await self._channel.send_command(
            command, expected_tag, timeout=self._command_timeout
        )
        success = response.get("success")
        if not isinstance(success, bool):
            raise ProtocolError(f"Malformed {expected_tag} response: {response!r}")
        if not success:
            error = response.get("error")
            raise ProtocolError(
                str(error) if error else f"{command['type']} returned success=false"
            )
        return response

    async def _begin_capture(self, settings: Settings, params: RecordingParams) -> None:
        self._set_state(EngineState.RECORDING)
        self._total = int(params.duration_minutes * 60)
        self._elapsed = 0
        session_id = uuid.uuid4().hex
        try:
            await self._capture.ensure()
            if not settings.device_id:
                raise DeviceMissingError("No audio device selected; configure one in settings")
            self._session_id = session_id
            self._capture.send(
                StartCapture(
                    session_id=session_id,
                    device_id=settings.device_id,
                    duration_ms=params.duration_ms,
                    mime_type=self._mime_type,
                )
            )
        except CaptureContextError as exc:
            self._session_id = None
            self._fail(f"Recording start failed: {exc}")
            await self._capture.close()
            return

        self._activity.info(
            f"Recording started: {params.duration_minutes:g} min",
            {"device_id": settings.device_id},
        )
        stop_delay = max(params.duration_minutes + 0.1, 1.0)
        self._alarms.create(STOP_ALARM_NAME, local_now() + timedelta(minutes=stop_delay))
        logger.info("Backup stop alarm set for %.1f min", stop_delay)
        self._start_ticker()

    async def _on_capture_result(self, result: CaptureResult) -> None:
        self._alarms.clear(STOP_ALARM_NAME)
        self._stop_ticker()
        self._session_id = None

        if not result.success:
            error = CaptureFailedError(result.error or "unknown error")
            self._fail(f"Recording failed: {error}")
            await self._capture.close()
            return

        self._set_state(EngineState.SAVING)
        try:
            if not result.artifact_ref:
                raise DeliveryError("Capture reported success without an artifact")
            settings = self._settings.load()
            filename = build_filename(
                settings.filename_template,
                self._frequency or 0,
                self._mode or "UNKNOWN",
            )
            destination = await self._delivery.deliver(result.artifact_ref, filename)
            self._activity.info(
                f"Recording saved: {destination.name}",
                {"duration_ms": result.duration_ms, "path": str(destination)},
            )
        except RecorderError as exc:
            self._fail(f"Download failed: {exc}")
            return
        finally:
            await self._capture.close()

        self._set_state(EngineState.IDLE)
        self._activity.info("Recording flow complete")

    async def _on_watchdog(self) -> None:
        self._activity.info("Backup stop alarm fired, force-stopping recording")
        self._stop_ticker()
        if self._state is EngineState.RECORDING:
            await self._graceful_stop("Recording force-stopped by backup alarm")

    async def _graceful_stop(self, force_message: str) -> None:
        done = self._recording_done
        try:
            self._capture.send(StopCapture())
            self._activity.info("Stop signal sent to capture context")
            if done is not None:
                try:
                    await asyncio.wait_for(done.wait(), timeout=self._stop_grace)
                except asyncio.TimeoutError:
                    pass
        except CaptureContextError as exc:
            self._activity.warn(f"Capture context unreachable, force-closing: {exc}")
        if self._state is EngineState.RECORDING:
            self._session_id = None
            await self._capture.close()
            self._set_state(EngineState.IDLE)
            self._activity.info(force_message)

    # ------------------------------------------------------------------
    # Capture events
    # ------------------------------------------------------------------
    async def _consume_events(self) -> None:
        while True:
            event = await self._capture.next_event()
            try:
                await self._handle_capture_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - handler failure
                logger.exception("Failed to handle capture event %r", event)

    async def _handle_capture_event(self, event: object) -> None:
        session_id = getattr(event, "session_id", None)
        if session_id is None or session_id != self._session_id:
            logger.debug("Ignoring capture event from stale session %s", session_id)
            return
        if isinstance(event, CaptureProgress):
            if self._state is EngineState.RECORDING:
                self._elapsed = int(event.elapsed)
                self._total = int(event.total)
        elif isinstance(event, CaptureResult):
            if self._state is not EngineState.RECORDING:
                logger.debug("Ignoring capture result outside recording")
                return
            await self._on_capture_result(event)
        else:
            logger.warning("Unknown capture event %r", event)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _fail(self, message: str) -> None:
        self._activity.error(message)
        self._set_state(EngineState.ERROR, message)

    def _set_state(self, state: EngineState, error: str | None = None) -> None:
        previous = self._state
        self._state = state
        self._error = error if state is EngineState.ERROR else None
        if state is EngineState.RECORDING:
            if previous is not EngineState.RECORDING:
                self._recording_done = asyncio.Event()
        else:
            self._elapsed = None
            self._total = None
            if self._recording_done is not None:
                self._recording_done.set()
                self._recording_done = None
        if previous is state:
            return
        logger.debug("Engine state %s -> %s", previous.value, state.value)
        for listener in list(self._listeners):
            try:
                listener(previous, state)
            except Exception:  # pragma: no cover - handler failure
                logger.exception("State listener failed")

    def _start_ticker(self) -> None:
        self._stop_ticker()
        self._recording_started = self._clock()
        self._ticker_task = asyncio.create_task(self._tick(), name="recording-ticker")

    def _stop_ticker(self) -> None:
        task, self._ticker_task = self._ticker_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _tick(self) -> None:
        while self._state is EngineState.RECORDING:
            await asyncio.sleep(self._tick_interval)
            if self._state is EngineState.RECORDING:
                self._elapsed = int(self._clock() - self._recording_started)


__all__ = [
    "EngineState",
    "EngineStatus",
    "RecordingEngine",
    "RecordingParams",
]
