"""FastAPI status and command surface for the recorder."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .activity_log import ActivityLog
from .alarms import AlarmService, APSchedulerAlarmService
from .capture.devices import list_input_devices
from .capture.proxy import CaptureContextProxy
from .delivery import FileDelivery
from .engine import EngineState, RecordingEngine, RecordingParams
from .errors import BusyRejection, ConfigLoadError
from .schedules import Schedule, ScheduleBook
from .settings import SettingsStore
from .store import KeyValueStore
from .translator import ScheduleTranslator
from .version import APP_VERSION

logger = logging.getLogger(__name__)


class RecordPayload(BaseModel):
    frequency: int
    mode: str
    duration_minutes: float
    data_mode: bool = False


class SchedulePayload(BaseModel):
    start_time: str
    end_time: str
    frequency: int
    mode: str
    data_mode: bool = False
    repeat: str = "once"
    enabled: bool = True


class SettingsPayload(BaseModel):
    channel_host: str | None = None
    channel_port: int | None = None
    channel_path: str | None = None
    rig_port: int | None = None
    device_id: str | None = None
    device_label: str | None = None
    filename_template: str | None = None


def create_app(
    data_dir: Path | str = Path("data"),
    *,
    downloads_dir: Path | str | None = None,
    alarm_service: AlarmService | None = None,
    capture_proxy: CaptureContextProxy | None = None,
    delivery: FileDelivery | None = None,
    engine_options: dict | None = None,
) -> FastAPI:
    app = FastAPI(title="Ham Recorder", version=APP_VERSION)

    data_dir = Path(data_dir)
    store = KeyValueStore(data_dir / "store.json")
    activity = ActivityLog(store)
    settings_store = SettingsStore(store)
    schedules = ScheduleBook(store)
    alarms = alarm_service or APSchedulerAlarmService()
    translator = ScheduleTranslator(alarms, activity=activity)
    capture = capture_proxy or CaptureContextProxy(spool_dir=data_dir / "spool")
    if delivery is None:
        delivery = FileDelivery(
            Path(downloads_dir) if downloads_dir is not None else data_dir / "recordings"
        )
    engine = RecordingEngine(
        settings=settings_store,
        schedules=schedules,
        activity=activity,
        alarms=alarms,
        translator=translator,
        capture=capture,
        delivery=delivery,
        **(engine_options or {}),
    )
    app.state.engine = engine
    app.state.activity = activity
    if store.load_error is not None:
        activity.error("Stored data could not be read", {"error": store.load_error})

    def log_transition(previous: EngineState, current: EngineState) -> None:
        logger.info("Recorder state %s -> %s", previous.value, current.value)

    engine.add_state_listener(log_transition)

    @app.on_event("startup")
    async def startup() -> None:
        activity.info("Recorder starting up, restoring alarms")
        alarms.start()
        await engine.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await engine.aclose()
        alarms.shutdown()
        logger.info("Recorder shut down")

    # ---- status and logs ----
    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return engine.get_status().to_dict()

    @app.get("/api/logs")
    async def get_logs(limit: int | None = Query(default=None, ge=1)) -> dict[str, object]:
        return {"entries": [entry.to_dict() for entry in activity.entries(limit)]}

    @app.delete("/api/logs")
    async def clear_logs() -> dict[str, object]:
        activity.clear()
        return {"entries": []}

    # ---- recording control ----
    @app.post("/api/record", status_code=202)
    async def manual_record(payload: RecordPayload) -> dict[str, object]:
        try:
            params = RecordingParams(
                frequency=payload.frequency,
                mode=payload.mode,
                duration_minutes=payload.duration_minutes,
                data_mode=payload.data_mode,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            engine.request_flow(params)
        except BusyRejection as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"ok": True}

    @app.post("/api/stop")
    async def stop_recording() -> dict[str, object]:
        await engine.stop()
        return engine.get_status().to_dict()

    @app.post("/api/reset")
    async def reset_state() -> dict[str, object]:
        engine.reset()
        return engine.get_status().to_dict()

    # ---- settings ----
    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        try:
            return settings_store.load().to_dict()
        except ConfigLoadError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.put("/api/settings")
    async def update_settings(payload: SettingsPayload) -> dict[str, object]:
        values = payload.model_dump(exclude_none=True)
        if not values:
            raise HTTPException(status_code=400, detail="No settings provided")
        try:
            updated = settings_store.update(values)
        except (ValueError, ConfigLoadError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        activity.info("Settings updated", {"fields": sorted(values)})
        return updated.to_dict()

    # ---- schedules ----
    @app.get("/api/schedules")
    async def list_schedules() -> dict[str, object]:
        try:
            items = schedules.list()
        except ConfigLoadError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"schedules": [schedule.to_dict() for schedule in items]}

    @app.put("/api/schedules/{schedule_id}")
    async def save_schedule(schedule_id: str, payload: SchedulePayload) -> dict[str, object]:
        try:
            schedule = Schedule(id=schedule_id, **payload.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        engine.save_schedule(schedule)
        return schedule.to_dict()

    @app.delete("/api/schedules/{schedule_id}")
    async def delete_schedule(schedule_id: str) -> dict[str, object]:
        try:
            removed = engine.delete_schedule(schedule_id)
        except ConfigLoadError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        if not removed:
            raise HTTPException(status_code=404, detail="Schedule not found")
        return {"deleted": schedule_id}

    # ---- diagnostics ----
    @app.post("/api/connection/test")
    async def test_connection() -> dict[str, object]:
        return await engine.test_connection()

    @app.get("/api/devices")
    async def get_devices() -> dict[str, object]:
        try:
            devices = await asyncio.to_thread(list_input_devices)
        except Exception as exc:
            logger.warning("Unable to enumerate input devices: %s", exc)
            return {"devices": [], "error": str(exc)}
        return {"devices": [device.to_dict() for device in devices]}

    return app


__all__ = ["create_app"]
