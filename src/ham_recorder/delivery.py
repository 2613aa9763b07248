"""Hand finished recordings over to the user's downloads directory."""
from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from .errors import DeliveryError

logger = logging.getLogger(__name__)


def unique_destination(directory: Path, name: str) -> Path:
    """Return ``directory/name``, adding `` (n)`` before the suffix if taken."""

    candidate = directory / name
    if not candidate.exists():
        return candidate
    stem, suffix = candidate.stem, candidate.suffix
    index = 1
    while True:
        candidate = directory / f"{stem} ({index}){suffix}"
        if not candidate.exists():
            return candidate
        index += 1


class FileDelivery:
    """Moves capture artifacts into ``downloads_dir`` under a chosen name."""

    def __init__(self, downloads_dir: Path | str = Path("recordings")) -> None:
        self._directory = Path(downloads_dir)

    @property
    def directory(self) -> Path:
        return self._directory

    async def deliver(self, artifact_ref: str, filename: str) -> Path:
        """Move ``artifact_ref`` to ``filename`` plus the artifact's suffix."""

        return await asyncio.to_thread(self._deliver_sync, Path(artifact_ref), filename)

    def _deliver_sync(self, source: Path, filename: str) -> Path:
        if not source.is_file():
            raise DeliveryError(f"Recording artifact not found: {source}")
        safe_name = Path(filename).name
        if not safe_name:
            raise DeliveryError("Recording filename is empty")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            destination = unique_destination(self._directory, safe_name + source.suffix)
            shutil.move(str(source), destination)
        except OSError as exc:
            raise DeliveryError(f"Failed to save recording: {exc}") from exc
        logger.info("Recording saved to %s", destination)
        return destination


__all__ = ["FileDelivery", "unique_destination"]
