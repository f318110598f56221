"""Chunked upload session store.

Each upload id owns one directory beneath the chunk root::

    <chunk_root>/<upload_id>/chunk-0
    <chunk_root>/<upload_id>/chunk-1
    <chunk_root>/<upload_id>/metadata.json

``metadata.json`` records the received chunk indices, the byte length of each
chunk and the extra form fields captured with the first chunk that carried any.
Metadata updates are read-modify-write and are serialised with one lock per
upload id so unrelated uploads never contend.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping

from ..errors import ChunkValidationError

logger = logging.getLogger(__name__)

_METADATA_FILENAME = "metadata.json"
_UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@dataclass(slots=True)
class UploadSession:
    """Server-side bookkeeping for one logical file transfer."""

    upload_id: str
    original_file_name: str
    total_chunks: int
    received_chunks: set[int] = field(default_factory=set)
    chunk_sizes: dict[int, int] = field(default_factory=dict)
    extra_fields: dict[str, str] = field(default_factory=dict)
    extra_fields_captured: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def received_count(self) -> int:
        return len(self.received_chunks)

    @property
    def expected_size(self) -> int:
        return sum(self.chunk_sizes.get(index, 0) for index in range(self.total_chunks))

    def missing_chunks(self, total_chunks: int | None = None) -> list[int]:
        """Return the indices in ``[0, total_chunks)`` that have not arrived."""
        expected = self.total_chunks if total_chunks is None else total_chunks
        return [index for index in range(expected) if index not in self.received_chunks]

    def is_complete(self) -> bool:
        return (
            len(self.received_chunks) == self.total_chunks
            and not self.missing_chunks()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "original_file_name": self.original_file_name,
            "total_chunks": self.total_chunks,
            "received_chunks": sorted(self.received_chunks),
            "chunk_sizes": {str(k): v for k, v in sorted(self.chunk_sizes.items())},
            "extra_fields": dict(self.extra_fields),
            "extra_fields_captured": self.extra_fields_captured,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UploadSession":
        chunk_sizes_raw = payload.get("chunk_sizes") or {}
        if not isinstance(chunk_sizes_raw, dict):
            raise TypeError(
                f"chunk_sizes must be a dict, got {type(chunk_sizes_raw).__name__}"
            )
        extra_fields = payload.get("extra_fields") or {}
        return cls(
            upload_id=str(payload["upload_id"]),
            original_file_name=str(payload["original_file_name"]),
            total_chunks=int(payload["total_chunks"]),
            received_chunks={int(index) for index in payload["received_chunks"]},
            chunk_sizes={int(k): int(v) for k, v in chunk_sizes_raw.items()},
            extra_fields={str(k): str(v) for k, v in extra_fields.items()},
            extra_fields_captured=bool(
                payload.get("extra_fields_captured", bool(extra_fields))
            ),
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )


@dataclass(slots=True)
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


@dataclass(slots=True, frozen=True)
class ChunkReceipt:
    """Progress information returned after a chunk is stored."""

    upload_id: str
    chunk_index: int
    total_chunks: int
    received_count: int


def validate_upload_id(upload_id: str) -> str:
    """Reject ids that cannot safely name a directory."""
    if not upload_id or not _UPLOAD_ID_PATTERN.match(upload_id):
        raise ChunkValidationError(
            "uploadId must be 1-128 characters of letters, digits, '-', '_' or '.'",
            upload_id=upload_id or None,
        )
    return upload_id


class UploadSessionStore:
    """Filesystem-backed store for chunk bytes and per-upload metadata."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks: dict[str, _LockEntry] = {}
        self._locks_guard = threading.Lock()

    def session_directory(self, upload_id: str) -> Path:
        return self.root / validate_upload_id(upload_id)

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.session_directory(upload_id) / f"chunk-{chunk_index}"

    @contextlib.contextmanager
    def lock(self, upload_id: str) -> Iterator[None]:
        """Serialise metadata mutation for a single upload id.

        Entries are reference counted and dropped once no caller holds or
        waits on them, so abandoned uploads do not pin a lock.
        """
        with self._locks_guard:
            entry = self._locks.get(upload_id)
            if entry is None:
                entry = self._locks[upload_id] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    self._locks.pop(upload_id, None)

    def register_chunk(
        self,
        *,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        data: bytes,
        original_file_name: str,
        extra_fields: Mapping[str, str] | None = None,
    ) -> ChunkReceipt:
        """Persist one chunk and record it in the session metadata.

        Re-sending an index overwrites the stored bytes and size without
        duplicating the index. Storage failures propagate as ``OSError`` and
        the same chunk can be retried safely.
        """
        validate_upload_id(upload_id)
        if total_chunks < 1:
            raise ChunkValidationError(
                "totalChunks must be at least 1", upload_id=upload_id
            )
        if not 0 <= chunk_index < total_chunks:
            raise ChunkValidationError(
                f"chunkIndex {chunk_index} is outside [0, {total_chunks})",
                upload_id=upload_id,
            )
        if not data:
            raise ChunkValidationError(
                f"chunk {chunk_index} has an empty body", upload_id=upload_id
            )
        if not original_file_name:
            raise ChunkValidationError(
                "originalFileName is required", upload_id=upload_id
            )

        directory = self.session_directory(upload_id)

        with self.lock(upload_id):
            session = self.load(upload_id)
            if session is not None and session.total_chunks != total_chunks:
                raise ChunkValidationError(
                    f"totalChunks {total_chunks} does not match the declared "
                    f"{session.total_chunks}",
                    upload_id=upload_id,
                )

            directory.mkdir(parents=True, exist_ok=True)
            _atomic_write_bytes(self.chunk_path(upload_id, chunk_index), data)

            if session is None:
                session = UploadSession(
                    upload_id=upload_id,
                    original_file_name=original_file_name,
                    total_chunks=total_chunks,
                )
                logger.info(
                    "Created upload session %s (%d chunks, file=%s)",
                    upload_id,
                    total_chunks,
                    original_file_name,
                )

            session.received_chunks.add(chunk_index)
            session.chunk_sizes[chunk_index] = len(data)
            if extra_fields and not session.extra_fields_captured:
                session.extra_fields = {str(k): str(v) for k, v in extra_fields.items()}
                session.extra_fields_captured = True
            session.updated_at = datetime.now(timezone.utc)
            self._save(session)

        logger.info(
            "Stored chunk %d/%d for upload %s (%d bytes, %d received)",
            chunk_index + 1,
            total_chunks,
            upload_id,
            len(data),
            session.received_count,
        )
        return ChunkReceipt(
            upload_id=upload_id,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            received_count=session.received_count,
        )

    def load(self, upload_id: str) -> UploadSession | None:
        """Return the stored session, or ``None`` when no metadata exists.

        Metadata that cannot be parsed is discarded and ``None`` is returned,
        so the next chunk starts the session afresh. Read failures propagate.
        """
        path = self.session_directory(upload_id) / _METADATA_FILENAME
        if not path.exists():
            return None

        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to read upload metadata at %s: %s", path, exc)
            raise

        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise TypeError(f"expected an object, got {type(payload).__name__}")
            return UploadSession.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Discarding unreadable upload metadata at %s, starting fresh: %s",
                path,
                exc,
            )
            return None

    def delete(self, upload_id: str) -> None:
        """Remove all chunk files and metadata for the upload.

        Best-effort: failures are logged and swallowed because the caller has
        already produced its artifact.
        """
        directory = self.session_directory(upload_id)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(
                "Failed to clean up upload session %s at %s: %s",
                upload_id,
                directory,
                exc,
            )

    def _save(self, session: UploadSession) -> Path:
        path = self.session_directory(session.upload_id) / _METADATA_FILENAME
        _atomic_write_bytes(
            path,
            json.dumps(session.to_dict(), ensure_ascii=False, indent=2).encode("utf-8"),
        )
        return path


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("wb") as handle:
        handle.write(data)
    os.replace(tmp_path, path)


__all__ = [
    "ChunkReceipt",
    "UploadSession",
    "UploadSessionStore",
    "validate_upload_id",
]
