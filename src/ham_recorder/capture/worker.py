"""Capture loop running inside the isolated capture context."""
from __future__ import annotations

import logging
import queue
import sys
import time
from multiprocessing.connection import Connection
from pathlib import Path
from typing import Callable, Protocol

import numpy as np

from .devices import load_sounddevice, resolve_device
from .encoder import AudioWriter, open_audio_writer
from .protocol import CaptureProgress, CaptureResult, Shutdown, StartCapture, StopCapture

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 48000
DEFAULT_CHANNELS = 1
PROGRESS_INTERVAL = 5.0
POLL_INTERVAL = 0.1
NO_AUDIO_ERROR = "No audio data recorded"

BlockCallback = Callable[[np.ndarray], None]


class AudioSource(Protocol):
    def start(self) -> None: ...

    def close(self) -> None: ...


SourceFactory = Callable[[str, int, int, BlockCallback], AudioSource]


class SoundDeviceSource:
    """Raw input stream from a sounddevice input.

    No gain control, echo cancellation or noise suppression is applied; the
    blocks are handed over exactly as the driver delivers them.
    """

    def __init__(
        self,
        device_id: str,
        sample_rate: int,
        channels: int,
        on_block: BlockCallback,
    ) -> None:
        sd = load_sounddevice()
        self._on_block = on_block
        self._stream = sd.InputStream(
            device=resolve_device(device_id),
            channels=channels,
            samplerate=sample_rate,
            dtype="float32",
            callback=self._callback,
            blocksize=0,
        )

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning("Input stream status: %s", status)
        self._on_block(indata.copy())

    def start(self) -> None:
        self._stream.start()

    def close(self) -> None:
        try:
            self._stream.stop()
        finally:
            self._stream.close()


class CaptureWorker:
    """Executes start/stop commands and reports progress and results.

    The worker keeps its own auto-stop timer: a capture ends after
    ``duration_ms`` even if no stop command ever arrives.
    """

    def __init__(
        self,
        cmd_conn: Connection,
        event_conn: Connection,
        *,
        spool_dir: Path | str,
        source_factory: SourceFactory = SoundDeviceSource,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        progress_interval: float = PROGRESS_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cmd_conn = cmd_conn
        self._event_conn = event_conn
        self._spool_dir = Path(spool_dir)
        self._source_factory = source_factory
        self._sample_rate = sample_rate
        self._channels = channels
        self._progress_interval = progress_interval
        self._poll_interval = poll_interval
        self._clock = clock
        self._blocks: queue.Queue[np.ndarray] = queue.Queue()
        self._session: StartCapture | None = None
        self._source: AudioSource | None = None
        self._writer: AudioWriter | None = None
        self._started_at = 0.0
        self._deadline = 0.0
        self._last_progress = 0.0
        self._undelivered: list[Path] = []

    @property
    def recording(self) -> bool:
        return self._session is not None

    # ---- main loop ----
    def run(self) -> None:
        logger.info("Capture worker ready")
        while True:
            if self._cmd_conn.poll(self._poll_interval):
                try:
                    message = self._cmd_conn.recv()
                except EOFError:
                    logger.info("Command pipe closed; exiting")
                    self._abandon()
                    break
                if isinstance(message, Shutdown):
                    self._abandon()
                    break
                self._handle(message)
            self._tick()
        logger.info("Capture worker exiting")

    def _handle(self, message: object) -> None:
        if isinstance(message, StartCapture):
            self._start(message)
        elif isinstance(message, StopCapture):
            if self._session is None:
                logger.warning("Stop requested with no capture in progress")
                return
            logger.info("Stop requested")
            self._finish()
        else:
            logger.warning("Ignoring unknown command %r", message)

    def _tick(self) -> None:
        if self._session is None:
            return
        try:
            self._drain()
        except Exception as exc:
            logger.exception("Recorder error")
            self._fail(f"Recorder error: {exc}")
            return
        now = self._clock()
        if now >= self._deadline:
            logger.info("Capture duration reached; stopping")
            self._finish()
            return
        if now - self._last_progress >= self._progress_interval:
            self._last_progress = now
            session = self._session
            self._emit(
                CaptureProgress(
                    session_id=session.session_id,
                    elapsed=int(now - self._started_at),
                    total=session.duration_ms // 1000,
                )
            )

    # ---- capture lifecycle ----
    def _start(self, request: StartCapture) -> None:
        if self._session is not None:
            logger.warning("Already recording; ignoring start for %s", request.session_id)
            return
        if request.duration_ms <= 0:
            self._emit(
                CaptureResult(
                    session_id=request.session_id,
                    success=False,
                    error="Capture duration must be positive",
                )
            )
            return
        self._spool_dir.mkdir(parents=True, exist_ok=True)
        writer: AudioWriter | None = None
        try:
            writer = open_audio_writer(
                self._spool_dir / f"capture-{request.session_id}",
                request.mime_type,
                sample_rate=self._sample_rate,
                channels=self._channels,
            )
            source = self._source_factory(
                request.device_id,
                self._sample_rate,
                self._channels,
                self._blocks.put,
            )
            source.start()
        except Exception as exc:
            logger.error("Failed to start capture: %s", exc)
            if writer is not None:
                self._discard(writer)
            self._emit(
                CaptureResult(
                    session_id=request.session_id,
                    success=False,
                    error=f"Failed to start capture: {exc}",
                )
            )
            return
        now = self._clock()
        self._session = request
        self._source = source
        self._writer = writer
        self._started_at = now
        self._last_progress = now
        self._deadline = now + request.duration_ms / 1000.0
        logger.info(
            "Capturing %s from device %s for %d ms",
            writer.format.mime_type,
            request.device_id,
            request.duration_ms,
        )

    def _finish(self) -> None:
        session, source, writer = self._release_source()
        if session is None or writer is None:
            return
        duration_ms = int((self._clock() - self._started_at) * 1000)
        try:
            self._drain_into(writer)
            writer.close()
        except Exception as exc:
            logger.exception("Failed to finalise capture")
            writer.path.unlink(missing_ok=True)
            self._emit(CaptureResult(session_id=session.session_id, success=False, error=str(exc)))
            return
        if writer.frames_written == 0:
            writer.path.unlink(missing_ok=True)
            self._emit(
                CaptureResult(session_id=session.session_id, success=False, error=NO_AUDIO_ERROR)
            )
            return
        logger.info("Capture finished: %s (%d ms)", writer.path, duration_ms)
        self._undelivered.append(writer.path)
        self._emit(
            CaptureResult(
                session_id=session.session_id,
                success=True,
                artifact_ref=str(writer.path),
                duration_ms=duration_ms,
                mime_type=writer.format.mime_type,
            )
        )

    def _fail(self, error: str) -> None:
        session, _, writer = self._release_source()
        if writer is not None:
            self._discard(writer)
        if session is not None:
            self._emit(CaptureResult(session_id=session.session_id, success=False, error=error))

    def _abandon(self) -> None:
        session, _, writer = self._release_source()
        if writer is not None:
            self._discard(writer)
        if session is not None:
            logger.warning("Abandoning capture %s", session.session_id)
        # Artifacts still in the spool at exit were never collected.
        for path in self._undelivered:
            if path.exists():
                logger.warning("Removing uncollected capture %s", path)
                path.unlink(missing_ok=True)
        self._undelivered.clear()

    def _release_source(self) -> tuple[StartCapture | None, AudioSource | None, AudioWriter | None]:
        session, source, writer = self._session, self._source, self._writer
        self._session = None
        self._source = None
        self._writer = None
        if source is not None:
            try:
                source.close()
            except Exception as exc:  # pragma: no cover - driver specific
                logger.warning("Error closing input stream: %s", exc)
        return session, source, writer

    # ---- helpers ----
    def _drain(self) -> None:
        if self._writer is not None:
            self._drain_into(self._writer)

    def _drain_into(self, writer: AudioWriter) -> None:
        while True:
            try:
                block = self._blocks.get_nowait()
            except queue.Empty:
                return
            writer.write(block)

    def _discard(self, writer: AudioWriter) -> None:
        while not self._blocks.empty():
            try:
                self._blocks.get_nowait()
            except queue.Empty:  # pragma: no cover - race with the audio thread
                break
        try:
            writer.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.debug("Error closing discarded writer: %s", exc)
        writer.path.unlink(missing_ok=True)

    def _emit(self, event: object) -> None:
        try:
            self._event_conn.send(event)
        except (BrokenPipeError, OSError) as exc:
            logger.warning("Unable to deliver %s: %s", type(event).__name__, exc)


def worker_main(cmd_conn: Connection, event_conn: Connection, spool_dir: str) -> None:
    """Entry point of the capture subprocess."""

    logging.basicConfig(
        level=logging.INFO,
        format="[capture %(process)d] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        CaptureWorker(cmd_conn, event_conn, spool_dir=spool_dir).run()
    except KeyboardInterrupt:
        logger.info("Capture worker interrupted")
    finally:
        cmd_conn.close()
        event_conn.close()


__all__ = [
    "AudioSource",
    "CaptureWorker",
    "NO_AUDIO_ERROR",
    "SoundDeviceSource",
    "worker_main",
]
