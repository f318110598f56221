"""Helpers for calling the OpenAI Whisper transcription API."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Callable, Mapping, Protocol

import httpx

from ..errors import CompressionError
from ..media import compress_to_target
from ..media.storage import LocalMediaStorage
from .source import DownloadFn, fetch_audio

logger = logging.getLogger(__name__)

_EXTENSION_MIME_TYPES: dict[str, str] = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "audio/mp4",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".webm": "audio/webm",
    ".mpeg": "audio/mpeg",
    ".mpga": "audio/mpeg",
}

_RETRIABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


class TranscriptionError(RuntimeError):
    """Raised when a transcription request ultimately fails."""

    def __init__(
        self, message: str, *, record_id: str, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.record_id = record_id
        self.status_code = status_code


@dataclass(slots=True)
class OpenAITranscriptionConfig:
    """Configuration for interacting with the OpenAI transcription endpoint."""

    api_key: str
    model: str = "whisper-1"
    base_url: str = "https://api.openai.com/v1"
    language: str | None = "en"
    request_timeout_seconds: float = 300.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    max_retry_backoff_seconds: float | None = 30.0
    user_agent: str | None = "SermonCast/0.1"
    size_limit_bytes: int = 25 * 1024 * 1024
    ffmpeg_path: str = "ffmpeg"
    public_base_url: str = "http://localhost:8000"
    download_timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("api_key must be provided for OpenAI transcription.")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive.")
        if self.retry_backoff_seconds <= 0:
            raise ValueError("retry_backoff_seconds must be positive.")
        if (
            self.max_retry_backoff_seconds is not None
            and self.max_retry_backoff_seconds <= 0
        ):
            raise ValueError(
                "max_retry_backoff_seconds must be positive when provided."
            )
        if self.size_limit_bytes <= 0:
            raise ValueError("size_limit_bytes must be positive.")


class RequestFn(Protocol):
    """Callable responsible for executing a single transcription request."""

    def __call__(
        self, *, file_path: Path, config: OpenAITranscriptionConfig
    ) -> dict[str, object]: ...


def transcribe_file(
    file_path: Path,
    *,
    record_id: str,
    config: OpenAITranscriptionConfig,
    request_fn: RequestFn | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Send one audio file to the API with retries and return its text."""
    if not file_path.exists():
        raise FileNotFoundError(f"audio file does not exist: {file_path}")

    perform_request = request_fn or _call_openai_transcription_api
    last_exception: Exception | None = None

    for attempt in range(1, config.max_attempts + 1):
        logger.info(
            "Transcribing record %s (attempt=%d/%d)",
            record_id,
            attempt,
            config.max_attempts,
        )
        request_start = time.monotonic()
        try:
            payload = perform_request(file_path=file_path, config=config)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status in _RETRIABLE_STATUS and attempt < config.max_attempts:
                sleep(
                    _select_retry_delay(
                        attempt=attempt, config=config, response=exc.response
                    )
                )
                last_exception = exc
                continue

            error_text = None
            if exc.response is not None:
                try:
                    error_text = exc.response.text
                except (AttributeError, UnicodeDecodeError) as read_exc:
                    logger.warning("Could not read error response text: %s", read_exc)
            raise TranscriptionError(
                f"transcription failed with status {status}: {error_text}",
                record_id=record_id,
                status_code=status,
            ) from exc
        except httpx.RequestError as exc:
            if attempt < config.max_attempts:
                sleep(_select_retry_delay(attempt=attempt, config=config, response=None))
                last_exception = exc
                continue

            raise TranscriptionError(
                "transcription request failed due to network error",
                record_id=record_id,
            ) from exc
        except Exception as exc:
            raise TranscriptionError(
                f"unexpected error during transcription: {exc}",
                record_id=record_id,
            ) from exc

        logger.info(
            "Record %s transcribed in %.1fs",
            record_id,
            time.monotonic() - request_start,
        )
        return _extract_transcript_text(payload, record_id=record_id)

    raise TranscriptionError(
        "exhausted retries while transcribing audio",
        record_id=record_id,
    ) from last_exception


def transcribe_audio_url(
    record_id: str,
    audio_url: str,
    *,
    config: OpenAITranscriptionConfig,
    storage: LocalMediaStorage | None = None,
    work_dir: Path | None = None,
    request_fn: RequestFn | None = None,
    download_fn: DownloadFn | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Fetch, shrink if needed, and transcribe the audio behind ``audio_url``.

    Temporary files are always removed before returning.
    """
    scratch = Path(tempfile.mkdtemp(prefix=f"transcribe-{record_id}-", dir=work_dir))
    try:
        suffix = Path(audio_url.split("?", 1)[0]).suffix.lower() or ".mp3"
        source = fetch_audio(
            audio_url,
            scratch / f"{record_id}{suffix}",
            public_base_url=config.public_base_url,
            storage=storage,
            download_fn=download_fn,
            timeout_seconds=config.download_timeout_seconds,
        )

        try:
            result = compress_to_target(
                source,
                config.size_limit_bytes,
                output_dir=scratch,
                ffmpeg_path=config.ffmpeg_path,
            )
        except CompressionError as exc:
            raise TranscriptionError(
                f"unable to process audio file: {exc}", record_id=record_id
            ) from exc

        if not result.within_target:
            raise TranscriptionError(
                f"file still too large after compression "
                f"({result.output_size_bytes / (1024 * 1024):.2f}MB); the maximum "
                f"size is {config.size_limit_bytes / (1024 * 1024):.0f}MB",
                record_id=record_id,
            )

        return transcribe_file(
            result.path,
            record_id=record_id,
            config=config,
            request_fn=request_fn,
            sleep=sleep,
        )
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def _call_openai_transcription_api(
    *, file_path: Path, config: OpenAITranscriptionConfig
) -> dict[str, object]:
    url = f"{config.base_url.rstrip('/')}/audio/transcriptions"
    headers = {"Authorization": f"Bearer {config.api_key}"}
    if config.user_agent:
        headers["User-Agent"] = config.user_agent

    data: dict[str, str] = {
        "model": config.model,
        "response_format": "verbose_json",
        "temperature": "0",
    }
    if config.language:
        data["language"] = config.language

    extension = file_path.suffix.lower()
    if extension not in _EXTENSION_MIME_TYPES:
        raise ValueError(
            f"Unsupported audio file extension '{extension}' for file {file_path}. "
            f"Supported extensions: {sorted(_EXTENSION_MIME_TYPES.keys())}"
        )
    mime_type = _EXTENSION_MIME_TYPES[extension]

    with file_path.open("rb") as audio_file:
        response = httpx.post(
            url,
            headers=headers,
            data=data,
            files={"file": (file_path.name, audio_file, mime_type)},
            timeout=config.request_timeout_seconds,
        )

    response.raise_for_status()

    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("OpenAI transcription API returned unexpected response format.")

    return payload


def _extract_transcript_text(payload: dict[str, object], *, record_id: str) -> str:
    text = payload.get("text")
    if isinstance(text, str):
        return text
    segments = payload.get("segments")
    if isinstance(segments, list):
        collected = [
            entry["text"]
            for entry in segments
            if isinstance(entry, dict) and isinstance(entry.get("text"), str)
        ]
        if collected:
            return " ".join(collected)
    raise TranscriptionError(
        "transcription response did not contain text field",
        record_id=record_id,
    )


def _select_retry_delay(
    *,
    attempt: int,
    config: OpenAITranscriptionConfig,
    response: httpx.Response | None,
) -> float:
    delay = config.retry_backoff_seconds * (2 ** (attempt - 1))
    retry_after = (
        _parse_retry_after_seconds(response.headers) if response is not None else None
    )
    if retry_after is not None:
        delay = max(delay, retry_after)
    if config.max_retry_backoff_seconds is not None:
        delay = min(delay, config.max_retry_backoff_seconds)
    return delay


def _parse_retry_after_seconds(headers: Mapping[str, str]) -> float | None:
    if "Retry-After" not in headers:
        return None
    value = headers["Retry-After"].strip()
    try:
        seconds = float(value)
    except ValueError:
        return _parse_retry_after_date(value)
    return seconds if seconds >= 0 else None


def _parse_retry_after_date(value: str) -> float | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delta = (parsed - datetime.now(timezone.utc)).total_seconds()
    return delta if delta > 0 else None


__all__ = [
    "OpenAITranscriptionConfig",
    "RequestFn",
    "TranscriptionError",
    "transcribe_audio_url",
    "transcribe_file",
]
