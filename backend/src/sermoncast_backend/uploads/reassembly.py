"""Finalize a chunked upload into a single assembled file."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import (
    ChunkValidationError,
    CorruptChunkError,
    IncompleteUploadError,
    ReassemblyError,
    SessionNotFoundError,
)
from .session import UploadSession, UploadSessionStore

logger = logging.getLogger(__name__)

DEFAULT_IN_MEMORY_LIMIT_BYTES = 50 * 1024 * 1024
_STREAM_BUFFER_SIZE = 1024 * 1024


class FinalizeState(str, Enum):
    """Phases a finalize request moves through."""

    OPEN = "open"
    VERIFYING = "verifying"
    CONCATENATING = "concatenating"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class AssembledMedia:
    """A reassembled upload waiting to be handed to storage."""

    upload_id: str
    path: Path
    size_bytes: int
    original_file_name: str
    extra_fields: dict[str, str]


def _transition(upload_id: str, state: FinalizeState) -> FinalizeState:
    logger.info("Finalize %s -> %s", upload_id, state.value)
    return state


def _safe_file_name(original_file_name: str) -> str:
    name = Path(original_file_name).name
    return name or "upload.bin"


def _verify_chunks(
    store: UploadSessionStore, session: UploadSession, total_chunks: int
) -> list[Path]:
    missing = session.missing_chunks(total_chunks)
    if missing:
        raise IncompleteUploadError(upload_id=session.upload_id, missing=missing)

    chunk_paths: list[Path] = []
    for index in range(total_chunks):
        path = store.chunk_path(session.upload_id, index)
        if not path.exists():
            raise CorruptChunkError(
                upload_id=session.upload_id,
                chunk_index=index,
                reason="chunk file is missing",
            )
        actual = path.stat().st_size
        if actual == 0:
            raise CorruptChunkError(
                upload_id=session.upload_id,
                chunk_index=index,
                reason="chunk file is empty",
            )
        recorded = session.chunk_sizes.get(index)
        if recorded is not None and recorded != actual:
            raise CorruptChunkError(
                upload_id=session.upload_id,
                chunk_index=index,
                reason=f"recorded size {recorded} does not match {actual} bytes on disk",
            )
        chunk_paths.append(path)
    return chunk_paths


def _assemble_in_memory(chunk_paths: list[Path], sizes: list[int], output: Path) -> None:
    """Copy every chunk into one pre-sized buffer at its cumulative offset."""
    buffer = bytearray(sum(sizes))
    view = memoryview(buffer)
    offset = 0
    for path, size in zip(chunk_paths, sizes):
        with path.open("rb") as handle:
            read = handle.readinto(view[offset : offset + size])
        if read != size:
            raise ReassemblyError(f"short read from {path}: {read} of {size} bytes")
        offset += size
    view.release()
    output.write_bytes(buffer)


def _assemble_streaming(chunk_paths: list[Path], output: Path) -> None:
    with output.open("wb") as sink:
        for path in chunk_paths:
            with path.open("rb") as source:
                shutil.copyfileobj(source, sink, _STREAM_BUFFER_SIZE)


def finalize_upload(
    store: UploadSessionStore,
    *,
    upload_id: str,
    total_chunks: int,
    original_file_name: str,
    output_dir: Path,
    in_memory_limit_bytes: int = DEFAULT_IN_MEMORY_LIMIT_BYTES,
) -> AssembledMedia:
    """Verify a session is complete and concatenate its chunks in index order.

    Small uploads are assembled in a single pre-sized buffer; uploads above
    ``in_memory_limit_bytes`` are streamed chunk by chunk. On success the chunk
    files and metadata are deleted (best-effort).
    """
    state = FinalizeState.OPEN
    if total_chunks < 1:
        raise ChunkValidationError(
            "totalChunks must be at least 1", upload_id=upload_id or None
        )

    with store.lock(upload_id):
        state = _transition(upload_id, FinalizeState.VERIFYING)
        session = store.load(upload_id)
        if session is None:
            _transition(upload_id, FinalizeState.FAILED)
            raise SessionNotFoundError(
                f"upload session {upload_id} was not found or has expired",
                upload_id=upload_id,
            )

        if session.total_chunks != total_chunks:
            _transition(upload_id, FinalizeState.FAILED)
            raise ChunkValidationError(
                f"finalize declares {total_chunks} chunks but the upload "
                f"declared {session.total_chunks}",
                upload_id=upload_id,
            )

        try:
            chunk_paths = _verify_chunks(store, session, total_chunks)
        except (IncompleteUploadError, CorruptChunkError):
            _transition(upload_id, FinalizeState.FAILED)
            raise

        sizes = [session.chunk_sizes[index] for index in range(total_chunks)]
        total_size = sum(session.chunk_sizes.values())

        state = _transition(upload_id, FinalizeState.CONCATENATING)
        output_dir.mkdir(parents=True, exist_ok=True)
        output = output_dir / f"{upload_id}-{_safe_file_name(original_file_name)}"

        try:
            if total_size < in_memory_limit_bytes:
                _assemble_in_memory(chunk_paths, sizes, output)
            else:
                logger.info(
                    "Streaming %d bytes for upload %s (limit %d)",
                    total_size,
                    upload_id,
                    in_memory_limit_bytes,
                )
                _assemble_streaming(chunk_paths, output)
        except ReassemblyError:
            _transition(upload_id, FinalizeState.FAILED)
            raise
        except OSError as exc:
            _transition(upload_id, FinalizeState.FAILED)
            raise ReassemblyError(
                f"failed to write assembled file for upload {upload_id}: {exc}",
                upload_id=upload_id,
            ) from exc

        written = output.stat().st_size if output.exists() else 0
        if written == 0 or written != total_size:
            _transition(upload_id, FinalizeState.FAILED)
            raise ReassemblyError(
                f"assembled file for upload {upload_id} has {written} bytes, "
                f"expected {total_size}",
                upload_id=upload_id,
            )

        state = _transition(upload_id, FinalizeState.PERSISTED)
        extra_fields = dict(session.extra_fields)

    store.delete(upload_id)

    logger.info(
        "Reassembled upload %s into %s (%d bytes, state=%s)",
        upload_id,
        output,
        total_size,
        state.value,
    )
    return AssembledMedia(
        upload_id=upload_id,
        path=output,
        size_bytes=total_size,
        original_file_name=original_file_name,
        extra_fields=extra_fields,
    )


__all__ = [
    "AssembledMedia",
    "DEFAULT_IN_MEMORY_LIMIT_BYTES",
    "FinalizeState",
    "finalize_upload",
]
