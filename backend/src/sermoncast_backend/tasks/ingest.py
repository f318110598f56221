"""Ingestion pipeline: reassemble a chunked upload, shrink it, and store it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import ChunkValidationError
from ..media import LocalMediaStorage, compress_to_target
from ..records import MediaRecord, RecordStore
from ..settings import Settings
from ..uploads import UploadSessionStore, finalize_upload

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IngestResult:
    """Outcome of a successful finalize request."""

    record_id: str
    audio_url: str
    size_bytes: int
    compressed: bool


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove temporary file %s: %s", path, exc)


def ingest_upload(
    *,
    upload_id: str,
    total_chunks: int,
    original_file_name: str,
    settings: Settings,
    sessions: UploadSessionStore,
    storage: LocalMediaStorage,
    records: RecordStore,
) -> IngestResult:
    """Finalize an upload and persist the result as a new media record.

    Reassembly and compression run to completion on the calling thread.
    Upload errors and :class:`~sermoncast_backend.errors.CompressionError`
    propagate to the caller unchanged.
    """
    if total_chunks < 1:
        raise ChunkValidationError(
            "totalChunks must be at least 1", upload_id=upload_id or None
        )

    assembled = finalize_upload(
        sessions,
        upload_id=upload_id,
        total_chunks=total_chunks,
        original_file_name=original_file_name,
        output_dir=settings.assembled_root,
        in_memory_limit_bytes=settings.in_memory_assembly_limit_bytes,
    )

    artifact = assembled.path
    compressed = False
    try:
        if assembled.size_bytes > settings.transcription_size_limit_bytes:
            result = compress_to_target(
                assembled.path,
                settings.transcription_size_limit_bytes,
                output_dir=settings.compression_root,
                ffmpeg_path=settings.ffmpeg_path,
            )
            artifact = result.path
            compressed = result.compressed
            if not result.within_target:
                logger.warning(
                    "Upload %s is still %d bytes after compression (limit %d)",
                    upload_id,
                    result.output_size_bytes,
                    settings.transcription_size_limit_bytes,
                )

        record_id = MediaRecord.create_id()
        stored = storage.save(
            artifact, record_id=record_id, original_file_name=original_file_name
        )
    finally:
        if artifact != assembled.path:
            _remove_quietly(assembled.path)
        _remove_quietly(artifact)

    record = MediaRecord.from_upload(
        record_id=record_id,
        audio_url=stored.url,
        size_bytes=stored.size_bytes,
        original_file_name=original_file_name,
        fields=assembled.extra_fields,
    )
    records.create(record)

    logger.info(
        "Ingested upload %s as record %s (%d bytes, compressed=%s)",
        upload_id,
        record_id,
        stored.size_bytes,
        compressed,
    )
    return IngestResult(
        record_id=record_id,
        audio_url=stored.url,
        size_bytes=stored.size_bytes,
        compressed=compressed,
    )


__all__ = ["IngestResult", "ingest_upload"]
