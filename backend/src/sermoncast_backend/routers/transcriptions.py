"""Transcription start, status and stall-recovery endpoints."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..job_tracker import TranscriptionJob, TranscriptionJobTracker
from ..records import STATUS_COMPLETED, STATUS_FAILED, RecordStore
from ..settings import Settings, get_settings
from ..tasks.stall import force_complete_stalled_records
from ..tasks.transcribe import TranscriptionDispatcher
from .deps import get_dispatcher, get_records, get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["transcriptions"])


class TranscriptionRequest(BaseModel):
    job_id: str | None = Field(
        None, description="Client-chosen job id; generated when omitted."
    )
    audio_url: str | None = Field(
        None, description="Overrides the stored audio URL of the record."
    )
    mock: bool = Field(False, description="Complete immediately with mock text.")


class TranscriptionJobResponse(BaseModel):
    job_id: str
    record_id: str
    status: str = Field(..., description="started, processing, completed or failed.")
    progress: float = Field(..., ge=0.0, le=1.0)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    tracked: bool = Field(
        True, description="False when reconstructed from the persisted record."
    )

    @classmethod
    def from_job(cls, job: TranscriptionJob) -> "TranscriptionJobResponse":
        payload = job.to_dict()
        return cls(
            job_id=job.job_id,
            record_id=job.record_id,
            status=job.state.value,
            progress=payload["progress"],
            started_at=job.started_at,
            finished_at=job.finished_at,
            duration_seconds=payload["duration_seconds"],
        )


class StallScanResponse(BaseModel):
    success: bool = True
    message: str
    stalled: list[dict[str, Any]] = Field(default_factory=list)
    completed: list[str] = Field(default_factory=list)
    scanned_at: datetime


@router.post(
    "/records/{record_id}/transcribe",
    response_model=TranscriptionJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def start_transcription(
    record_id: str,
    payload: TranscriptionRequest | None = None,
    dispatcher: TranscriptionDispatcher = Depends(get_dispatcher),
    tracker: TranscriptionJobTracker = Depends(get_tracker),
) -> TranscriptionJobResponse:
    """Kick off a background transcription; the response does not wait for it."""
    request = payload or TranscriptionRequest()
    job_id = request.job_id or uuid.uuid4().hex

    existing = tracker.get(job_id)
    if existing is not None and not existing.state.is_terminal:
        logger.warning("Rejected duplicate transcription job %s", job_id)
        raise HTTPException(
            status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is already running.",
        )

    try:
        job = dispatcher.start_transcription(
            job_id=job_id,
            record_id=record_id,
            audio_url=request.audio_url,
            mock=request.mock,
        )
    except KeyError as exc:
        raise HTTPException(
            status.HTTP_404_NOT_FOUND, detail="Record not found."
        ) from exc
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return TranscriptionJobResponse.from_job(job)


@router.get("/transcriptions", response_model=list[TranscriptionJobResponse])
def list_transcriptions(
    tracker: TranscriptionJobTracker = Depends(get_tracker),
) -> list[TranscriptionJobResponse]:
    return [TranscriptionJobResponse.from_job(job) for job in tracker.list_jobs()]


@router.get("/transcriptions/{job_id}", response_model=TranscriptionJobResponse)
def get_transcription(
    job_id: str,
    record_id: str | None = None,
    tracker: TranscriptionJobTracker = Depends(get_tracker),
    records: RecordStore = Depends(get_records),
) -> TranscriptionJobResponse:
    """Report a tracked job, falling back to the record once the job is evicted."""
    job = tracker.get(job_id)
    if job is not None:
        return TranscriptionJobResponse.from_job(job)

    if record_id:
        record = records.get(record_id)
        if record is not None:
            done = record.transcription_status in {STATUS_COMPLETED, STATUS_FAILED}
            return TranscriptionJobResponse(
                job_id=job_id,
                record_id=record_id,
                status=record.transcription_status,
                progress=1.0 if done else 0.0,
                tracked=False,
            )

    raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Job not found.")


@router.post("/transcriptions/stalled/scan", response_model=StallScanResponse)
def scan_stalled(
    settings: Settings = Depends(get_settings),
    records: RecordStore = Depends(get_records),
) -> StallScanResponse:
    """Force-complete records stuck in processing beyond the stall threshold."""
    report = force_complete_stalled_records(
        records, threshold_seconds=settings.stall_threshold_seconds
    )
    payload = report.to_dict()
    return StallScanResponse(
        message=report.message,
        stalled=payload["stalled"],
        completed=payload["completed"],
        scanned_at=report.scanned_at,
    )


__all__ = ["router"]
