from __future__ import annotations

from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from sermoncast_backend.job_tracker import JobState, TranscriptionJobTracker
from sermoncast_backend.records import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    MediaRecord,
    RecordStore,
)
from sermoncast_backend.settings import Settings, set_settings
from sermoncast_backend.tasks.transcribe import (
    MOCK_TRANSCRIPT,
    TranscriptionDispatcher,
    build_transcription_config,
)


class _InlineExecutor:
    """Runs submitted work immediately on the calling thread."""

    def __init__(self) -> None:
        self.submitted: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        self.submitted.append((fn, args))
        future: Future = Future()
        future.set_result(fn(*args))
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass


class _DeferredExecutor(_InlineExecutor):
    """Records submissions without running them."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        self.submitted.append((fn, args))
        return Future()


class _BrokenExecutor(_InlineExecutor):
    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        raise RuntimeError("cannot schedule new futures after shutdown")


@pytest.fixture(autouse=True)
def reset_settings() -> Iterator[None]:
    set_settings(None)
    yield
    set_settings(None)


@pytest.fixture()
def records(tmp_path: Path) -> RecordStore:
    store = RecordStore(tmp_path / "records")
    store.create(
        MediaRecord.from_upload(
            record_id="rec-1",
            audio_url="/api/media/rec-1.mp3",
            size_bytes=42,
            original_file_name="sermon.mp3",
            fields={"title": "Mercy"},
        )
    )
    return store


def _dispatcher(
    records: RecordStore,
    transcribe_fn: Callable[[str, str], str],
    executor: _InlineExecutor | None = None,
) -> TranscriptionDispatcher:
    return TranscriptionDispatcher(
        tracker=TranscriptionJobTracker(retention_seconds=60),
        records=records,
        transcribe_fn=transcribe_fn,
        executor=executor or _InlineExecutor(),
    )


def test_successful_job_completes_record(records: RecordStore) -> None:
    calls: list[tuple[str, str]] = []

    def transcribe(record_id: str, audio_url: str) -> str:
        calls.append((record_id, audio_url))
        return "Blessed are the meek."

    dispatcher = _dispatcher(records, transcribe)
    dispatcher.start_transcription(job_id="job-1", record_id="rec-1")

    assert calls == [("rec-1", "/api/media/rec-1.mp3")]
    record = records.get("rec-1")
    assert record is not None
    assert record.transcription_status == STATUS_COMPLETED
    assert record.transcription == "Blessed are the meek."
    assert dispatcher.tracker.get("job-1").state is JobState.COMPLETED  # type: ignore[union-attr]
    dispatcher.shutdown()


def test_start_returns_before_work_runs(records: RecordStore) -> None:
    executor = _DeferredExecutor()
    dispatcher = _dispatcher(records, lambda *_: "text", executor)

    job = dispatcher.start_transcription(
        job_id="job-1", record_id="rec-1", audio_url="https://cdn.example/a.mp3"
    )

    assert job.state is JobState.STARTED
    assert records.get("rec-1").transcription_status == STATUS_PROCESSING  # type: ignore[union-attr]
    assert executor.submitted[0][1] == ("job-1", "rec-1", "https://cdn.example/a.mp3")
    dispatcher.shutdown()


def test_failed_job_records_error(records: RecordStore) -> None:
    def transcribe(record_id: str, audio_url: str) -> str:
        raise RuntimeError("API quota exhausted")

    dispatcher = _dispatcher(records, transcribe)
    dispatcher.start_transcription(job_id="job-1", record_id="rec-1")

    record = records.get("rec-1")
    assert record is not None
    assert record.transcription_status == STATUS_FAILED
    assert record.transcription_error == "API quota exhausted"
    assert dispatcher.tracker.get("job-1").state is JobState.FAILED  # type: ignore[union-attr]
    dispatcher.shutdown()


def test_mock_mode_completes_immediately(records: RecordStore) -> None:
    def transcribe(record_id: str, audio_url: str) -> str:  # pragma: no cover
        raise AssertionError("mock mode must not transcribe")

    executor = _InlineExecutor()
    dispatcher = _dispatcher(records, transcribe, executor)

    job = dispatcher.start_transcription(job_id="job-1", record_id="rec-1", mock=True)

    assert job.state is JobState.COMPLETED
    assert executor.submitted == []
    assert records.get("rec-1").transcription == MOCK_TRANSCRIPT  # type: ignore[union-attr]
    dispatcher.shutdown()


class _ReadOnlyCompletionStore(RecordStore):
    """Fails every attempt to mark a record completed."""

    def update_status(self, record_id, status, text=None, error_message=None, **kwargs):
        if status == STATUS_COMPLETED:
            raise OSError("read-only file system")
        return super().update_status(record_id, status, text, error_message, **kwargs)


def test_mock_mode_store_failure_marks_job_failed(records: RecordStore) -> None:
    store = _ReadOnlyCompletionStore(records.root)
    dispatcher = _dispatcher(store, lambda *_: "text")

    with pytest.raises(OSError):
        dispatcher.start_transcription(job_id="job-1", record_id="rec-1", mock=True)

    assert dispatcher.tracker.get("job-1").state is JobState.FAILED  # type: ignore[union-attr]
    assert store.get("rec-1").transcription_status == STATUS_FAILED  # type: ignore[union-attr]
    assert store.get("rec-1").transcription_error == "read-only file system"  # type: ignore[union-attr]

    retry = dispatcher.tracker.register("job-1", "rec-1")
    assert retry.state is JobState.STARTED
    dispatcher.shutdown()


def test_unknown_record_is_rejected(records: RecordStore) -> None:
    dispatcher = _dispatcher(records, lambda *_: "text")

    with pytest.raises(KeyError):
        dispatcher.start_transcription(job_id="job-1", record_id="missing")

    assert dispatcher.tracker.get("job-1") is None


def test_submit_failure_marks_job_failed(records: RecordStore) -> None:
    dispatcher = _dispatcher(records, lambda *_: "text", _BrokenExecutor())

    with pytest.raises(RuntimeError):
        dispatcher.start_transcription(job_id="job-1", record_id="rec-1")

    assert dispatcher.tracker.get("job-1").state is JobState.FAILED  # type: ignore[union-attr]
    assert records.get("rec-1").transcription_status == STATUS_FAILED  # type: ignore[union-attr]


def test_build_config_requires_api_key(tmp_path: Path) -> None:
    settings = Settings(
        storage_root=tmp_path,
        redis_url="redis://localhost:6379/0",
        job_queue_name="sermoncast:jobs",
        job_timeout_seconds=900,
        ffmpeg_path="ffmpeg",
        openai_api_key=None,
    )

    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        build_transcription_config(settings)

    settings.openai_api_key = "sk-test"
    config = build_transcription_config(settings)
    assert config.model == "whisper-1"
    assert config.language == "en"
