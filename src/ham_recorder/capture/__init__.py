"""Isolated audio capture context and the proxy used to drive it."""

from .protocol import CaptureProgress, CaptureResult, Shutdown, StartCapture, StopCapture
from .proxy import CaptureContext, CaptureContextProxy, ProcessCaptureContext

__all__ = [
    "CaptureContext",
    "CaptureContextProxy",
    "CaptureProgress",
    "CaptureResult",
    "ProcessCaptureContext",
    "Shutdown",
    "StartCapture",
    "StopCapture",
]
