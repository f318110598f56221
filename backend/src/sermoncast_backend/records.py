"""Helpers for persisting media records and their transcription status."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping

logger = logging.getLogger(__name__)

STATUS_NOT_STARTED = "not_started"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TRANSCRIPTION_STATUSES = (
    STATUS_NOT_STARTED,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)


@dataclass(slots=True)
class MediaRecord:
    """A stored recording together with its transcription outcome."""

    record_id: str
    title: str
    speaker: str
    date: str
    audio_url: str
    size_bytes: int
    original_file_name: str
    transcription_status: str = STATUS_NOT_STARTED
    transcription: str | None = None
    transcription_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def create_id(cls) -> str:
        return uuid.uuid4().hex

    @classmethod
    def from_upload(
        cls,
        *,
        record_id: str,
        audio_url: str,
        size_bytes: int,
        original_file_name: str,
        fields: Mapping[str, str],
    ) -> "MediaRecord":
        """Build a record from the extra fields captured with the first chunk."""
        known = {"title", "speaker", "date"}
        return cls(
            record_id=record_id,
            title=fields.get("title") or "Untitled",
            speaker=fields.get("speaker") or "Unknown",
            date=fields.get("date") or date.today().isoformat(),
            audio_url=audio_url,
            size_bytes=size_bytes,
            original_file_name=original_file_name,
            extra={k: v for k, v in fields.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "title": self.title,
            "speaker": self.speaker,
            "date": self.date,
            "audio_url": self.audio_url,
            "size_bytes": self.size_bytes,
            "original_file_name": self.original_file_name,
            "transcription_status": self.transcription_status,
            "transcription": self.transcription,
            "transcription_error": self.transcription_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MediaRecord":
        status = str(payload.get("transcription_status", STATUS_NOT_STARTED))
        if status not in TRANSCRIPTION_STATUSES:
            raise ValueError(f"unknown transcription status: {status}")
        return cls(
            record_id=str(payload["record_id"]),
            title=str(payload["title"]),
            speaker=str(payload["speaker"]),
            date=str(payload["date"]),
            audio_url=str(payload["audio_url"]),
            size_bytes=int(payload["size_bytes"]),
            original_file_name=str(payload["original_file_name"]),
            transcription_status=status,
            transcription=payload.get("transcription"),
            transcription_error=payload.get("transcription_error"),
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
            extra=dict(payload.get("extra") or {}),
        )


class RecordStore:
    """JSON-file-per-record store shared by the API and worker processes."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()

    def _path(self, record_id: str) -> Path:
        return self.root / f"{Path(record_id).name}.json"

    def create(self, record: MediaRecord) -> MediaRecord:
        with self._lock:
            path = self._path(record.record_id)
            if path.exists():
                raise ValueError(f"record {record.record_id} already exists")
            self._write(record)
        logger.info("Created media record %s (%s)", record.record_id, record.title)
        return record

    def get(self, record_id: str) -> MediaRecord | None:
        path = self._path(record_id)
        if not path.exists():
            return None
        return self._read(path)

    def list_records(self) -> list[MediaRecord]:
        return sorted(self._iter_records(), key=lambda r: r.updated_at, reverse=True)

    def find_by_status(self, status: str) -> list[MediaRecord]:
        return [r for r in self._iter_records() if r.transcription_status == status]

    def update_status(
        self,
        record_id: str,
        status: str,
        text: str | None = None,
        error_message: str | None = None,
        *,
        expected_status: str | None = None,
    ) -> MediaRecord | None:
        """Set the transcription status, optionally storing text or an error.

        With ``expected_status`` the write only happens while the record is
        still in that status; ``None`` is returned when it has moved on.
        """
        if status not in TRANSCRIPTION_STATUSES:
            raise ValueError(f"unknown transcription status: {status}")

        with self._lock:
            current = self.get(record_id)
            if current is None:
                raise KeyError(f"media record not found: {record_id}")
            if (
                expected_status is not None
                and current.transcription_status != expected_status
            ):
                return None

            updated = replace(
                current,
                transcription_status=status,
                updated_at=datetime.now(timezone.utc),
            )
            if text is not None:
                updated.transcription = text
            if error_message is not None:
                updated.transcription_error = error_message
            self._write(updated)

        logger.info("Record %s transcription status -> %s", record_id, status)
        return updated

    def _iter_records(self) -> Iterator[MediaRecord]:
        if not self.root.exists():
            return
        for path in sorted(self.root.glob("*.json")):
            try:
                yield self._read(path)
            except (json.JSONDecodeError, KeyError, ValueError, TypeError) as exc:
                logger.error("Skipping unreadable media record %s: %s", path, exc)

    def _read(self, path: Path) -> MediaRecord:
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"record payload must be a dict, got {type(payload).__name__}")
        return MediaRecord.from_dict(payload)

    def _write(self, record: MediaRecord) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(record.record_id)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp_path.write_text(
            json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        os.replace(tmp_path, path)
        return path


__all__ = [
    "MediaRecord",
    "RecordStore",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_NOT_STARTED",
    "STATUS_PROCESSING",
    "TRANSCRIPTION_STATUSES",
]
