# Chunked upload endpoints.

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile

from ..errors import (
    ChunkValidationError,
    CompressionError,
    CorruptChunkError,
    IncompleteUploadError,
    IngestError,
    ReassemblyError,
    SessionNotFoundError,
)
from ..media import LocalMediaStorage
from ..records import RecordStore
from ..settings import Settings, get_settings
from ..tasks.ingest import ingest_upload
from ..uploads import UploadSessionStore
from .deps import get_records, get_sessions, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/uploads", tags=["uploads"])

# Form fields that describe the transfer itself rather than the recording.
_RESERVED_FIELDS = {
    "chunk",
    "chunkIndex",
    "totalChunks",
    "uploadId",
    "originalFileName",
    "originalFileSize",
    "fileType",
}

_STATUS_BY_ERROR: dict[type[IngestError], int] = {
    ChunkValidationError: status.HTTP_400_BAD_REQUEST,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    IncompleteUploadError: status.HTTP_409_CONFLICT,
    CorruptChunkError: status.HTTP_409_CONFLICT,
    ReassemblyError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    CompressionError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ChunkUploadResponse(BaseModel):
    success: bool = True
    message: str
    upload_id: str = Field(..., description="Client-generated upload identifier.")
    chunk_index: int
    total_chunks: int
    received_count: int = Field(..., description="Distinct chunks stored so far.")


class FinalizeResponse(BaseModel):
    id: str = Field(..., description="Identifier of the new media record.")
    audio_url: str
    size_bytes: int
    compressed: bool
    message: str = "Chunked upload completed successfully"


def _to_http_error(exc: IngestError) -> HTTPException:
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code, detail=exc.as_detail())


def _require_text(form: FormData, name: str) -> str:
    value = form.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ChunkValidationError(f"{name} is required")
    return value.strip()


def _require_int(form: FormData, name: str) -> int:
    raw = _require_text(form, name)
    try:
        return int(raw)
    except ValueError as exc:
        raise ChunkValidationError(f"{name} must be an integer") from exc


def _extra_fields(form: FormData) -> dict[str, str]:
    return {
        key: value
        for key, value in form.multi_items()
        if key not in _RESERVED_FIELDS and isinstance(value, str)
    }


@router.post(
    "/chunks",
    response_model=ChunkUploadResponse,
    summary="Upload a single chunk of a large recording",
)
async def upload_chunk(
    request: Request,
    sessions: UploadSessionStore = Depends(get_sessions),
) -> ChunkUploadResponse:
    """Store one chunk; extra form fields are kept from the first chunk only."""
    form = await request.form()
    try:
        chunk = form.get("chunk")
        if not isinstance(chunk, UploadFile):
            raise ChunkValidationError("chunk file is required")
        upload_id = _require_text(form, "uploadId")
        chunk_index = _require_int(form, "chunkIndex")
        total_chunks = _require_int(form, "totalChunks")
        original_file_name = _require_text(form, "originalFileName")

        data = await chunk.read()
        await chunk.close()

        receipt = await run_in_threadpool(
            sessions.register_chunk,
            upload_id=upload_id,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            data=data,
            original_file_name=original_file_name,
            extra_fields=_extra_fields(form),
        )
    except IngestError as exc:
        logger.warning("Rejected chunk upload: %s", exc)
        raise _to_http_error(exc) from exc
    except OSError as exc:
        logger.exception("Failed to store chunk")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to save chunk: {exc}",
        ) from exc
    finally:
        await form.close()

    return ChunkUploadResponse(
        message=(
            f"Chunk {receipt.chunk_index + 1}/{receipt.total_chunks} "
            "received successfully"
        ),
        upload_id=receipt.upload_id,
        chunk_index=receipt.chunk_index,
        total_chunks=receipt.total_chunks,
        received_count=receipt.received_count,
    )


def _finalize(
    fields: dict[str, Any],
    settings: Settings,
    sessions: UploadSessionStore,
    storage: LocalMediaStorage,
    records: RecordStore,
) -> FinalizeResponse:
    result = ingest_upload(
        upload_id=fields["upload_id"],
        total_chunks=fields["total_chunks"],
        original_file_name=fields["original_file_name"],
        settings=settings,
        sessions=sessions,
        storage=storage,
        records=records,
    )
    return FinalizeResponse(
        id=result.record_id,
        audio_url=result.audio_url,
        size_bytes=result.size_bytes,
        compressed=result.compressed,
    )


@router.post(
    "/finalize",
    response_model=FinalizeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reassemble a chunked upload into a stored recording",
)
async def finalize_upload(
    request: Request,
    settings: Settings = Depends(get_settings),
    sessions: UploadSessionStore = Depends(get_sessions),
    storage: LocalMediaStorage = Depends(get_storage),
    records: RecordStore = Depends(get_records),
) -> FinalizeResponse:
    """Verify, reassemble and (if needed) compress the upload, then store it."""
    form = await request.form()
    try:
        fields = {
            "upload_id": _require_text(form, "uploadId"),
            "total_chunks": _require_int(form, "totalChunks"),
            "original_file_name": _require_text(form, "originalFileName"),
        }
        return await run_in_threadpool(
            _finalize, fields, settings, sessions, storage, records
        )
    except IngestError as exc:
        logger.warning("Finalize failed: %s", exc)
        raise _to_http_error(exc) from exc
    except OSError as exc:
        logger.exception("Failed to store reassembled file")
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save the reassembled file",
        ) from exc
    finally:
        await form.close()


__all__ = ["router"]
