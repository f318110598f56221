"""Background transcription of stored media records."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable

from ..job_tracker import TranscriptionJob, TranscriptionJobTracker
from ..media import LocalMediaStorage
from ..records import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    RecordStore,
)
from ..settings import Settings
from ..transcription import OpenAITranscriptionConfig, transcribe_audio_url

logger = logging.getLogger(__name__)

MOCK_TRANSCRIPT = "This is a mock transcription for testing purposes."

# (record_id, audio_url) -> transcript text
TranscribeFn = Callable[[str, str], str]


def build_transcription_config(settings: Settings) -> OpenAITranscriptionConfig:
    """Translate project settings into an OpenAI transcription configuration."""
    if not settings.openai_api_key:
        raise RuntimeError(
            "OPENAI_API_KEY is not configured; cannot run transcription job."
        )

    return OpenAITranscriptionConfig(
        api_key=settings.openai_api_key,
        model=settings.openai_transcription_model,
        base_url=settings.openai_base_url,
        language=settings.openai_transcription_language,
        request_timeout_seconds=settings.openai_request_timeout_seconds,
        max_attempts=settings.openai_max_attempts,
        retry_backoff_seconds=settings.openai_retry_backoff_seconds,
        max_retry_backoff_seconds=settings.openai_max_retry_backoff_seconds,
        user_agent=settings.openai_user_agent,
        size_limit_bytes=settings.transcription_size_limit_bytes,
        ffmpeg_path=settings.ffmpeg_path,
        public_base_url=settings.public_base_url,
        download_timeout_seconds=settings.download_timeout_seconds,
    )


def openai_transcribe_fn(
    settings: Settings, storage: LocalMediaStorage | None = None
) -> TranscribeFn:
    """Return a transcribe callable backed by the OpenAI API."""

    def transcribe(record_id: str, audio_url: str) -> str:
        config = build_transcription_config(settings)
        work_dir = settings.storage_root / "transcribe"
        work_dir.mkdir(parents=True, exist_ok=True)
        return transcribe_audio_url(
            record_id,
            audio_url,
            config=config,
            storage=storage,
            work_dir=work_dir,
        )

    return transcribe


class TranscriptionDispatcher:
    """Starts transcription jobs on a background pool and tracks their state.

    ``start_transcription`` returns as soon as the job is registered and
    submitted; the request that triggered it never waits for the result.
    """

    def __init__(
        self,
        *,
        tracker: TranscriptionJobTracker,
        records: RecordStore,
        transcribe_fn: TranscribeFn,
        executor: Executor | None = None,
        max_workers: int = 4,
    ) -> None:
        self.tracker = tracker
        self.records = records
        self._transcribe_fn = transcribe_fn
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="transcribe"
        )

    def start_transcription(
        self,
        *,
        job_id: str,
        record_id: str,
        audio_url: str | None = None,
        mock: bool = False,
    ) -> TranscriptionJob:
        """Register ``job_id`` and hand the work to the background pool."""
        record = self.records.get(record_id)
        if record is None:
            raise KeyError(f"media record not found: {record_id}")

        source_url = audio_url or record.audio_url
        if not source_url:
            raise ValueError(f"media record {record_id} has no audio URL")

        if mock:
            logger.info("Using mock transcription for record %s", record_id)
            self.tracker.register(job_id, record_id)
            self.tracker.mark_processing(job_id)
            try:
                self.records.update_status(
                    record_id, STATUS_COMPLETED, text=MOCK_TRANSCRIPT
                )
            except Exception as exc:
                logger.exception(
                    "Mock transcription failed",
                    extra={"job_id": job_id, "record_id": record_id},
                )
                self._record_failure(record_id, str(exc) or type(exc).__name__)
                self.tracker.mark_failed(job_id)
                raise
            return self.tracker.mark_completed(job_id)

        job = self.tracker.register(job_id, record_id)
        try:
            self.records.update_status(record_id, STATUS_PROCESSING)
            self._executor.submit(self.run_job, job_id, record_id, source_url)
        except Exception as exc:
            logger.exception(
                "Failed to start transcription",
                extra={"job_id": job_id, "record_id": record_id},
            )
            self._record_failure(record_id, str(exc) or type(exc).__name__)
            self.tracker.mark_failed(job_id)
            raise

        logger.info("Transcription job %s started for record %s", job_id, record_id)
        return job

    def run_job(self, job_id: str, record_id: str, audio_url: str) -> None:
        """Body of the background task; never raises."""
        try:
            self.tracker.mark_processing(job_id)
            text = self._transcribe_fn(record_id, audio_url)
            self.records.update_status(record_id, STATUS_COMPLETED, text=text)
        except Exception as exc:
            logger.exception(
                "Transcription failed",
                extra={"job_id": job_id, "record_id": record_id},
            )
            self._record_failure(record_id, str(exc) or type(exc).__name__)
            self._finish(job_id, failed=True)
            return

        self._finish(job_id, failed=False)

    def shutdown(self, *, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        self.tracker.shutdown()

    def _record_failure(self, record_id: str, message: str) -> None:
        try:
            self.records.update_status(record_id, STATUS_FAILED, error_message=message)
        except Exception:
            logger.exception(
                "Failed to record transcription error",
                extra={"record_id": record_id},
            )

    def _finish(self, job_id: str, *, failed: bool) -> None:
        try:
            if failed:
                self.tracker.mark_failed(job_id)
            else:
                self.tracker.mark_completed(job_id)
        except Exception:
            logger.exception(
                "Failed to update job state", extra={"job_id": job_id}
            )


__all__ = [
    "MOCK_TRANSCRIPT",
    "TranscribeFn",
    "TranscriptionDispatcher",
    "build_transcription_config",
    "openai_transcribe_fn",
]
