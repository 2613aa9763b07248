"""Audio artifact writers and container/codec selection."""
from __future__ import annotations

import logging
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import av
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioFormat:
    """Represents a container/codec pair a capture can be encoded into."""

    mime_type: str
    container: str
    codec: str
    suffix: str


_AUDIO_FORMATS: tuple[AudioFormat, ...] = (
    AudioFormat(
        mime_type="audio/webm;codecs=opus",
        container="webm",
        codec="libopus",
        suffix=".webm",
    ),
    AudioFormat(
        mime_type="audio/ogg;codecs=opus",
        container="ogg",
        codec="libopus",
        suffix=".ogg",
    ),
    AudioFormat(
        mime_type="audio/wav",
        container="wav",
        codec="pcm_s16le",
        suffix=".wav",
    ),
)

_AUDIO_FORMAT_BY_MIME = {fmt.mime_type: fmt for fmt in _AUDIO_FORMATS}

DEFAULT_MIME_TYPE = _AUDIO_FORMATS[0].mime_type
WAV_FORMAT = _AUDIO_FORMATS[-1]


def list_audio_formats() -> tuple[AudioFormat, ...]:
    return _AUDIO_FORMATS


def _normalise_mime(mime_type: str | None) -> str:
    if not mime_type:
        return DEFAULT_MIME_TYPE
    return mime_type.replace(" ", "").lower()


def iter_candidate_formats(preference: str | None) -> Iterator[AudioFormat]:
    """Yield formats to try, preferred first, ending with the WAV fallback."""

    preferred = _AUDIO_FORMAT_BY_MIME.get(_normalise_mime(preference))
    if preferred is None:
        logger.debug("Unknown audio format %r; using defaults", preference)
    else:
        yield preferred
    for candidate in _AUDIO_FORMATS:
        if candidate is not preferred:
            yield candidate


def _codec_available(fmt: AudioFormat) -> bool:
    try:
        context = av.CodecContext.create(fmt.codec, "w")
    except av.FFmpegError as exc:  # pragma: no cover - codec lookup failure
        logger.debug("Codec %s unavailable: %s", fmt.codec, exc)
        return False
    except ValueError as exc:  # pragma: no cover - unknown codec name
        logger.debug("Codec %s unknown: %s", fmt.codec, exc)
        return False
    return bool(getattr(context, "is_encoder", True))


def to_pcm16(block: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to interleaved signed 16-bit PCM."""

    data = np.asarray(block)
    if data.dtype != np.int16:
        data = (np.clip(data.astype(np.float32), -1.0, 1.0) * 32767.0).astype(np.int16)
    return data


class AudioWriter:
    """Base class for streaming audio sinks."""

    def __init__(self, path: Path, fmt: AudioFormat, sample_rate: int, channels: int) -> None:
        self.path = path
        self.format = fmt
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.frames_written = 0

    def write(self, block: np.ndarray) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class PyAVAudioWriter(AudioWriter):
    """Encode PCM blocks with FFmpeg through PyAV."""

    def __init__(self, path: Path, fmt: AudioFormat, sample_rate: int, channels: int) -> None:
        super().__init__(path, fmt, sample_rate, channels)
        self._layout = "mono" if self.channels == 1 else "stereo"
        self._container = av.open(str(path), mode="w", format=fmt.container)
        try:
            self._stream = self._container.add_stream(
                fmt.codec, rate=self.sample_rate, layout=self._layout
            )
        except Exception:
            self._container.close()
            raise
        self._pts = 0

    def write(self, block: np.ndarray) -> None:
        pcm = to_pcm16(block).reshape(-1, self.channels)
        samples = pcm.shape[0]
        if samples == 0:
            return
        frame = av.AudioFrame.from_ndarray(
            pcm.reshape(1, -1), format="s16", layout=self._layout
        )
        frame.sample_rate = self.sample_rate
        frame.pts = self._pts
        self._pts += samples
        for packet in self._stream.encode(frame):
            self._container.mux(packet)
        self.frames_written += samples

    def close(self) -> None:
        try:
            for packet in self._stream.encode(None):
                self._container.mux(packet)
        finally:
            self._container.close()


class WaveAudioWriter(AudioWriter):
    """Write uncompressed 16-bit PCM with the stdlib ``wave`` module."""

    def __init__(self, path: Path, fmt: AudioFormat, sample_rate: int, channels: int) -> None:
        super().__init__(path, fmt, sample_rate, channels)
        self._handle = wave.open(str(path), "wb")
        self._handle.setnchannels(self.channels)
        self._handle.setsampwidth(2)
        self._handle.setframerate(self.sample_rate)

    def write(self, block: np.ndarray) -> None:
        pcm = to_pcm16(block).reshape(-1, self.channels)
        if pcm.shape[0] == 0:
            return
        self._handle.writeframes(pcm.tobytes())
        self.frames_written += pcm.shape[0]

    def close(self) -> None:
        self._handle.close()


def open_audio_writer(
    base_path: Path,
    preference: str | None,
    *,
    sample_rate: int,
    channels: int,
) -> AudioWriter:
    """Open a writer for the first usable format, falling back towards WAV.

    ``base_path`` has no suffix; the chosen format's suffix is appended.
    """

    attempted: list[str] = []
    for fmt in iter_candidate_formats(preference):
        attempted.append(fmt.mime_type)
        path = base_path.with_name(base_path.name + fmt.suffix)
        if fmt is WAV_FORMAT:
            return WaveAudioWriter(path, fmt, sample_rate, channels)
        if not _codec_available(fmt):
            continue
        try:
            writer = PyAVAudioWriter(path, fmt, sample_rate, channels)
        except (av.FFmpegError, ValueError) as exc:
            logger.warning("Unable to open %s writer: %s", fmt.mime_type, exc)
            path.unlink(missing_ok=True)
            continue
        if fmt.mime_type != _normalise_mime(preference):
            logger.info("Falling back to %s after trying %s", fmt.mime_type, attempted)
        return writer
    raise RuntimeError(f"No usable audio format (tried {', '.join(attempted)})")  # pragma: no cover


__all__ = [
    "AudioFormat",
    "AudioWriter",
    "DEFAULT_MIME_TYPE",
    "PyAVAudioWriter",
    "WAV_FORMAT",
    "WaveAudioWriter",
    "iter_candidate_formats",
    "list_audio_formats",
    "open_audio_writer",
    "to_pcm16",
]
