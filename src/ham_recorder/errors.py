"""Exception hierarchy shared by the recorder components."""
from __future__ import annotations


class RecorderError(RuntimeError):
    """Base class for recoverable recorder failures."""


class ConfigLoadError(RecorderError):
    """Raised when persisted settings cannot be read."""


class ChannelError(RecorderError):
    """Base class for command channel failures."""


class ChannelConnectionError(ChannelError, ConnectionError):
    """Raised once every connection attempt has failed."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class NotConnectedError(ChannelError):
    """Raised when a command is issued without an open connection."""


class ProtocolError(ChannelError):
    """Raised when the remote endpoint rejects a command or replies badly."""


class DuplicateCommandError(ProtocolError):
    """Raised when a response tag is already awaited by another command."""


class CommandTimeoutError(ChannelError, TimeoutError):
    """Raised when no matching response arrives in time."""


class CaptureContextError(RecorderError):
    """Base class for failures of the isolated capture context."""


class DeviceMissingError(CaptureContextError):
    """Raised when no capture device has been configured."""


class CaptureStartError(CaptureContextError):
    """Raised when the capture context cannot begin recording."""


class CaptureFailedError(CaptureContextError):
    """Raised when a capture finished without a usable artifact."""


class DeliveryError(RecorderError):
    """Raised when a finished recording cannot be handed to the user."""


class BusyRejection(RecorderError):
    """Raised when a flow is requested while another one is running."""


class StaleAlarmRejection(RecorderError):
    """Raised when an alarm fired too long after its scheduled time."""

    def __init__(self, message: str, *, drift_seconds: float) -> None:
        super().__init__(message)
        self.drift_seconds = drift_seconds


__all__ = [
    "BusyRejection",
    "CaptureContextError",
    "CaptureFailedError",
    "CaptureStartError",
    "ChannelConnectionError",
    "ChannelError",
    "CommandTimeoutError",
    "ConfigLoadError",
    "DeliveryError",
    "DeviceMissingError",
    "DuplicateCommandError",
    "NotConnectedError",
    "ProtocolError",
    "RecorderError",
    "StaleAlarmRejection",
]
