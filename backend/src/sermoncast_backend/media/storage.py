"""Local persistence for finished media files."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/api/media"


@dataclass(slots=True, frozen=True)
class StoredMedia:
    """Location of a media file after it has been handed to storage."""

    path: Path
    url: str
    size_bytes: int


class LocalMediaStorage:
    """Stores media files beneath a root directory and serves them by URL."""

    def __init__(self, root: Path, *, url_prefix: str = MEDIA_URL_PREFIX) -> None:
        self.root = root
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, source: Path, *, record_id: str, original_file_name: str) -> StoredMedia:
        """Move ``source`` to ``<root>/<record_id><ext>`` and return its URL.

        The extension comes from ``source`` so a compressed artifact keeps its
        ``.mp3`` suffix; ``original_file_name`` is the fallback.
        """
        if not source.exists():
            raise FileNotFoundError(f"media file does not exist: {source}")

        extension = source.suffix or Path(original_file_name).suffix
        filename = f"{record_id}{extension.lower()}"
        self.root.mkdir(parents=True, exist_ok=True)
        destination = self.root / filename

        shutil.move(str(source), str(destination))

        size_bytes = destination.stat().st_size if destination.exists() else 0
        if size_bytes == 0:
            raise OSError(f"stored media file is missing or empty: {destination}")

        logger.info("Stored media %s (%d bytes)", destination, size_bytes)
        return StoredMedia(
            path=destination,
            url=f"{self.url_prefix}/{filename}",
            size_bytes=size_bytes,
        )

    def resolve(self, filename: str) -> Path | None:
        """Map a served filename back to a path inside the storage root."""
        candidate = (self.root / Path(filename).name).resolve()
        if candidate.parent != self.root.resolve() or not candidate.is_file():
            return None
        return candidate


__all__ = ["LocalMediaStorage", "MEDIA_URL_PREFIX", "StoredMedia"]
