"""Lifecycle and message passing for the isolated capture context."""
from __future__ import annotations

import asyncio
import logging
import multiprocessing
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from pathlib import Path
from typing import Awaitable, Callable

from ..errors import CaptureContextError
from .protocol import Command, Event, Shutdown
from .worker import worker_main

logger = logging.getLogger(__name__)

_mp_context = multiprocessing.get_context("spawn")

EventSink = Callable[[Event], None]


def purge_spool(directory: Path) -> list[str]:
    """Remove ``capture-*`` artifacts left behind by earlier capture contexts."""

    removed: list[str] = []
    if not directory.is_dir():
        return removed
    for candidate in directory.glob("capture-*"):
        try:
            candidate.unlink()
        except (FileNotFoundError, IsADirectoryError, PermissionError):
            continue
        removed.append(candidate.name)
    if removed:
        logger.warning("Purged %d stale capture file(s) from %s", len(removed), directory)
    return removed


class CaptureContext:
    """A running capture context accepting commands."""

    @property
    def alive(self) -> bool:
        raise NotImplementedError

    def send(self, message: Command) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        raise NotImplementedError


ContextFactory = Callable[[EventSink], Awaitable[CaptureContext]]


class ProcessCaptureContext(CaptureContext):
    """Capture context hosted in a spawned subprocess."""

    def __init__(
        self,
        process: BaseProcess,
        cmd_conn: Connection,
        event_conn: Connection,
        sink: EventSink,
    ) -> None:
        self._process = process
        self._cmd_conn = cmd_conn
        self._event_conn = event_conn
        self._sink = sink
        self._listener_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def spawn(cls, sink: EventSink, *, spool_dir: Path | str) -> "ProcessCaptureContext":
        cmd_parent_conn, cmd_child_conn = _mp_context.Pipe()
        event_parent_conn, event_child_conn = _mp_context.Pipe()
        process = _mp_context.Process(
            target=worker_main,
            args=(cmd_child_conn, event_child_conn, str(spool_dir)),
            daemon=True,
            name="capture-context",
        )
        await asyncio.to_thread(process.start)
        cmd_child_conn.close()
        event_child_conn.close()
        context = cls(process, cmd_parent_conn, event_parent_conn, sink)
        context._listener_task = asyncio.create_task(
            context._listen(), name="capture-context-listener"
        )
        logger.info("Capture context started (pid=%s)", process.pid)
        return context

    @property
    def alive(self) -> bool:
        return not self._closed and self._process.is_alive()

    def send(self, message: Command) -> None:
        if self._closed:
            raise CaptureContextError("Capture context is closed")
        try:
            self._cmd_conn.send(message)
        except (BrokenPipeError, OSError) as exc:
            raise CaptureContextError(f"Capture context unreachable: {exc}") from exc

    async def _listen(self) -> None:
        try:
            while True:
                if await asyncio.to_thread(self._event_conn.poll, 0.1):
                    try:
                        event = self._event_conn.recv()
                    except EOFError:
                        logger.info("Capture context event pipe closed")
                        break
                    self._sink(event)
                elif not self._process.is_alive():
                    logger.warning("Capture context exited (code=%s)", self._process.exitcode)
                    break
        except asyncio.CancelledError:
            logger.debug("Capture context listener cancelled")
        except Exception:  # pragma: no cover - unexpected pipe failure
            logger.exception("Capture context listener failed")

    async def aclose(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._cmd_conn.send(Shutdown())
        except (BrokenPipeError, OSError):
            pass
        task, self._listener_task = self._listener_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._process.is_alive():
            await asyncio.to_thread(self._process.join, timeout)
        if self._process.is_alive():
            logger.warning("Force killing capture context (pid=%s)", self._process.pid)
            self._process.terminate()
            await asyncio.to_thread(self._process.join, 1.0)
        self._cmd_conn.close()
        self._event_conn.close()
        logger.info("Capture context closed")


class CaptureContextProxy:
    """Creates, addresses and tears down at most one capture context.

    Commands are fire-and-forget; events from the context are queued and
    read by the engine through :meth:`next_event`.
    """

    def __init__(
        self,
        factory: ContextFactory | None = None,
        *,
        spool_dir: Path | str = Path("data/spool"),
    ) -> None:
        self._spool_dir = Path(spool_dir)
        self._factory: ContextFactory = factory or self._spawn_process
        self._context: CaptureContext | None = None
        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._lock = asyncio.Lock()

    @property
    def exists(self) -> bool:
        return self._context is not None

    async def ensure(self) -> None:
        """Create the capture context unless one is already running."""

        async with self._lock:
            context = self._context
            if context is not None and context.alive:
                return
            if context is not None:
                logger.warning("Replacing dead capture context")
                await context.aclose()
                self._context = None
            await asyncio.to_thread(purge_spool, self._spool_dir)
            try:
                self._context = await self._factory(self._publish)
            except (OSError, RuntimeError) as exc:
                raise CaptureContextError(f"Unable to create capture context: {exc}") from exc

    async def close(self) -> None:
        async with self._lock:
            context, self._context = self._context, None
            if context is not None:
                await context.aclose()

    def send(self, message: Command) -> None:
        context = self._context
        if context is None:
            raise CaptureContextError("Capture context is not running")
        context.send(message)

    async def next_event(self) -> Event:
        return await self._events.get()

    def _publish(self, event: Event) -> None:
        self._events.put_nowait(event)

    async def _spawn_process(self, sink: EventSink) -> CaptureContext:
        return await ProcessCaptureContext.spawn(sink, spool_dir=self._spool_dir)


__all__ = [
    "CaptureContext",
    "CaptureContextProxy",
    "ContextFactory",
    "EventSink",
    "ProcessCaptureContext",
    "purge_spool",
]
