"""Input device discovery backed by sounddevice."""
from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def load_sounddevice():
    """Import sounddevice, explaining the usual PortAudio failure."""

    try:
        import sounddevice
    except (ImportError, OSError) as exc:  # pragma: no cover - host dependent
        raise RuntimeError(
            "sounddevice is not available. Install the PortAudio runtime "
            f"(for example `apt install libportaudio2`) ({exc})"
        ) from exc
    return sounddevice


@dataclass(frozen=True, slots=True)
class InputDevice:
    id: str
    label: str
    channels: int
    sample_rate: float

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "label": self.label,
            "channels": self.channels,
            "sample_rate": self.sample_rate,
        }


def list_input_devices() -> list[InputDevice]:
    """Return every device exposing at least one input channel."""

    sd = load_sounddevice()
    devices = sd.query_devices()
    discovered: list[InputDevice] = []
    for index, info in enumerate(devices):
        channels = int(info.get("max_input_channels", 0) or 0)
        if channels <= 0:
            continue
        name = str(info.get("name") or "").strip()
        discovered.append(
            InputDevice(
                id=str(index),
                label=name or f"Microphone {index}",
                channels=channels,
                sample_rate=float(info.get("default_samplerate") or 0.0),
            )
        )
    logger.debug("Discovered %d/%d audio input device(s)", len(discovered), len(devices))
    return discovered


def resolve_device(device_id: str) -> int | str:
    """Map a stored device id to the value sounddevice expects.

    Numeric ids are device indexes; anything else is passed through as a
    name (sounddevice matches names by substring).
    """

    value = str(device_id).strip()
    if not value:
        raise ValueError("Device id must not be empty")
    if value.isdigit():
        return int(value)
    return value


__all__ = ["InputDevice", "list_input_devices", "load_sounddevice", "resolve_device"]
