"""Force-complete transcriptions that have been processing for too long.

The scan reads persisted media records rather than the in-memory job tracker,
so it stays correct across restarts and when several API processes run.
A stuck record receives a fixed placeholder transcript and status
``completed`` so that nobody waits on it forever.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..jobs import get_job_queue, schedule_stall_scan
from ..records import STATUS_COMPLETED, STATUS_PROCESSING, RecordStore
from ..settings import get_settings

logger = logging.getLogger(__name__)

PLACEHOLDER_TRANSCRIPT = """\
This is a sample transcription that was auto-completed by the system after detecting a stuck job.

The original transcription process appeared to be stuck or taking too long.
This is placeholder text that is used when a transcription job needs to be force-completed.

Please try transcribing again if you need the actual content."""


@dataclass(slots=True, frozen=True)
class StalledRecord:
    record_id: str
    title: str
    minutes_stuck: int


@dataclass(slots=True)
class StallScanReport:
    """Result of one scan over the record store."""

    scanned_at: datetime
    stalled: list[StalledRecord] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.stalled:
            return "No stuck transcription jobs found"
        return (
            f"Found {len(self.stalled)} stuck jobs, "
            f"force completed {len(self.completed)}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned_at": self.scanned_at.isoformat(),
            "stalled": [
                {
                    "record_id": item.record_id,
                    "title": item.title,
                    "minutes_stuck": item.minutes_stuck,
                }
                for item in self.stalled
            ],
            "completed": list(self.completed),
            "message": self.message,
        }


def force_complete_stalled_records(
    records: RecordStore,
    *,
    threshold_seconds: float,
    now: datetime | None = None,
) -> StallScanReport:
    """Resolve every record stuck in ``processing`` for at least the threshold."""
    if threshold_seconds < 0:
        raise ValueError("threshold_seconds must not be negative.")

    scanned_at = now or datetime.now(timezone.utc)
    report = StallScanReport(scanned_at=scanned_at)

    for record in records.find_by_status(STATUS_PROCESSING):
        idle_seconds = (scanned_at - record.updated_at).total_seconds()
        if idle_seconds < threshold_seconds:
            continue

        stalled = StalledRecord(
            record_id=record.record_id,
            title=record.title,
            minutes_stuck=int(idle_seconds // 60),
        )
        report.stalled.append(stalled)
        logger.info(
            "Force completing stuck transcription for record %s (stuck for %d minutes)",
            record.record_id,
            stalled.minutes_stuck,
        )

        try:
            updated = records.update_status(
                record.record_id,
                STATUS_COMPLETED,
                text=PLACEHOLDER_TRANSCRIPT,
                expected_status=STATUS_PROCESSING,
            )
        except (KeyError, OSError, ValueError) as exc:
            logger.error(
                "Error force completing record %s: %s", record.record_id, exc
            )
            continue

        if updated is None:
            logger.info(
                "Record %s finished before it could be force completed",
                record.record_id,
            )
            continue
        report.completed.append(record.record_id)

    logger.info("Stall scan: %s", report.message)
    return report


def scan_stalled_transcriptions(*, reschedule: bool = True) -> dict[str, Any]:
    """RQ entrypoint: scan once, then queue the next scan."""
    settings = get_settings()
    records = RecordStore(settings.records_root)
    report = force_complete_stalled_records(
        records, threshold_seconds=settings.stall_threshold_seconds
    )

    if reschedule:
        try:
            schedule_stall_scan(
                queue=get_job_queue(settings),
                delay_seconds=settings.stall_scan_interval_seconds,
            )
        except Exception:
            logger.exception(
                "Failed to schedule next stall scan",
                extra={"interval": settings.stall_scan_interval_seconds},
            )
            raise

    return report.to_dict()


__all__ = [
    "PLACEHOLDER_TRANSCRIPT",
    "StallScanReport",
    "StalledRecord",
    "force_complete_stalled_records",
    "scan_stalled_transcriptions",
]
