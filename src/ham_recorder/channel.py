"""WebSocket command channel matching responses to commands by type tag."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import (
    ChannelConnectionError,
    CommandTimeoutError,
    DuplicateCommandError,
    NotConnectedError,
)

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
CLOSE_REASON = "Client disconnect"
DEFAULT_COMMAND_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class ConnectPolicy:
    """Retry policy applied by :meth:`CommandChannel.connect`."""

    timeout: float = 5.0
    max_attempts: int = 3
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("Connect timeout must be positive")
        if self.max_attempts < 1:
            raise ValueError("At least one connection attempt is required")
        if self.delay < 0:
            raise ValueError("Retry delay must not be negative")


DEFAULT_CONNECT_POLICY = ConnectPolicy()

Connector = Callable[[str], Awaitable[Any]]


async def _open_websocket(url: str) -> Any:
    return await websocket_connect(url, open_timeout=None)


class CommandChannel:
    """Single always-current WebSocket connection to the rig bridge.

    Outbound commands are JSON objects. Each :meth:`send_command` call waits
    for the first inbound message whose ``type`` equals the expected tag.
    Only one command may await a given tag at a time.
    """

    def __init__(self, *, connector: Connector | None = None) -> None:
        self._connector: Connector = connector or _open_websocket
        self._connection: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._listeners: dict[str, asyncio.Future[dict[str, Any]]] = {}

    # ---- properties ----
    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def pending_tags(self) -> tuple[str, ...]:
        return tuple(self._listeners)

    # ---- lifecycle ----
    async def connect(
        self,
        url: str,
        policy: ConnectPolicy = DEFAULT_CONNECT_POLICY,
    ) -> None:
        """Open a fresh connection, retrying according to ``policy``."""

        await self.disconnect()
        last_error: BaseException | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                connection = await asyncio.wait_for(self._connector(url), timeout=policy.timeout)
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "Connection attempt %d/%d to %s timed out after %.1fs",
                    attempt,
                    policy.max_attempts,
                    url,
                    policy.timeout,
                )
            except (OSError, WebSocketException) as exc:
                last_error = exc
                logger.warning(
                    "Connection attempt %d/%d to %s failed: %s",
                    attempt,
                    policy.max_attempts,
                    url,
                    exc,
                )
            else:
                self._connection = connection
                self._reader_task = asyncio.create_task(self._read_loop(connection))
                logger.info("Connected to %s", url)
                return
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay)
        reason = str(last_error) or type(last_error).__name__
        raise ChannelConnectionError(
            f"WebSocket connection failed after {policy.max_attempts} attempts: {reason}",
            attempts=policy.max_attempts,
        ) from last_error

    async def disconnect(self) -> None:
        """Close the connection, if any, and forget pending listeners."""

        connection, self._connection = self._connection, None
        reader, self._reader_task = self._reader_task, None
        self._listeners.clear()
        if connection is not None:
            try:
                await connection.close(code=NORMAL_CLOSURE, reason=CLOSE_REASON)
            except (OSError, WebSocketException) as exc:  # pragma: no cover - best effort close
                logger.debug("Error while closing channel: %s", exc)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    # ---- commands ----
    async def send_command(
        self,
        command: Mapping[str, Any],
        expected_tag: str,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> dict[str, Any]:
        """Send ``command`` and return the first response tagged ``expected_tag``."""

        connection = self._connection
        if connection is None:
            raise NotConnectedError("WebSocket is not connected")
        if expected_tag in self._listeners:
            raise DuplicateCommandError(
                f'A command awaiting "{expected_tag}" is already in flight'
            )
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._listeners[expected_tag] = future
        try:
            try:
                await connection.send(json.dumps(dict(command)))
            except ConnectionClosed as exc:
                raise NotConnectedError(f"WebSocket connection closed: {exc}") from exc
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CommandTimeoutError(
                f'Timeout waiting for "{expected_tag}" response ({int(timeout * 1000)}ms)'
            ) from exc
        finally:
            if self._listeners.get(expected_tag) is future:
                del self._listeners[expected_tag]

    # ---- implementation ----
    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            logger.info("Channel closed by remote: %s", exc)
        finally:
            if self._connection is connection:
                self._connection = None
                logger.info("Channel connection lost")

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping unparseable message: %r", raw)
            return
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning("Dropping message without a type tag: %r", raw)
            return
        future = self._listeners.get(message["type"])
        if future is None or future.done():
            logger.debug("No listener for %s message", message["type"])
            return
        future.set_result(message)


__all__ = ["CommandChannel", "ConnectPolicy", "DEFAULT_CONNECT_POLICY"]
