"""Media record listing and stored audio delivery."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from ..media import LocalMediaStorage
from ..records import MediaRecord, RecordStore
from .deps import get_records, get_storage

router = APIRouter(prefix="/api", tags=["records"])


class MediaRecordResponse(BaseModel):
    id: str = Field(..., description="Unique identifier of the record.")
    title: str
    speaker: str
    date: str
    audio_url: str = Field(..., description="Where the stored audio is served.")
    size_bytes: int = Field(..., ge=0)
    original_file_name: str
    transcription_status: str
    transcription: str | None = None
    transcription_error: str | None = None
    created_at: datetime
    updated_at: datetime
    extra: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: MediaRecord) -> "MediaRecordResponse":
        return cls(
            id=record.record_id,
            title=record.title,
            speaker=record.speaker,
            date=record.date,
            audio_url=record.audio_url,
            size_bytes=record.size_bytes,
            original_file_name=record.original_file_name,
            transcription_status=record.transcription_status,
            transcription=record.transcription,
            transcription_error=record.transcription_error,
            created_at=record.created_at,
            updated_at=record.updated_at,
            extra=dict(record.extra),
        )


@router.get("/records", response_model=list[MediaRecordResponse])
def list_records(
    records: RecordStore = Depends(get_records),
) -> list[MediaRecordResponse]:
    return [MediaRecordResponse.from_record(record) for record in records.list_records()]


@router.get("/records/{record_id}", response_model=MediaRecordResponse)
def get_record(
    record_id: str,
    records: RecordStore = Depends(get_records),
) -> MediaRecordResponse:
    record = records.get(record_id)
    if record is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Record not found.")
    return MediaRecordResponse.from_record(record)


@router.get("/media/{filename}", response_class=FileResponse)
def get_media(
    filename: str,
    storage: LocalMediaStorage = Depends(get_storage),
) -> FileResponse:
    path = storage.resolve(filename)
    if path is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Media not found.")
    return FileResponse(path, filename=path.name)


__all__ = ["MediaRecordResponse", "router"]
