"""Messages exchanged with the capture context over its pipes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union


# --- Commands (engine -> capture context) ---

@dataclass(slots=True)
class StartCapture:
    """Open the input device and record for ``duration_ms``."""
    session_id: str
    device_id: str
    duration_ms: int
    mime_type: str


@dataclass(slots=True)
class StopCapture:
    """Finish the current capture early and report the result."""


@dataclass(slots=True)
class Shutdown:
    """Abandon any capture in progress and exit the context."""


Command = Union[StartCapture, StopCapture, Shutdown]


# --- Events (capture context -> engine) ---

@dataclass(slots=True)
class CaptureProgress:
    session_id: str
    elapsed: int
    total: int


@dataclass(slots=True)
class CaptureResult:
    session_id: str
    success: bool
    artifact_ref: str | None = None
    duration_ms: int | None = None
    mime_type: str | None = None
    error: str | None = None


Event = Union[CaptureProgress, CaptureResult]


__all__ = [
    "CaptureProgress",
    "CaptureResult",
    "Command",
    "Event",
    "Shutdown",
    "StartCapture",
    "StopCapture",
]
