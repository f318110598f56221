# Application-wide configuration helpers.

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_SETTINGS_CACHE: Settings | None = None

_MIB = 1024 * 1024


@dataclass(slots=True)
class Settings:
    """Runtime configuration derived from environment variables."""

    storage_root: Path
    redis_url: str
    job_queue_name: str
    job_timeout_seconds: int
    ffmpeg_path: str
    in_memory_assembly_limit_bytes: int = 50 * _MIB
    transcription_size_limit_bytes: int = 25 * _MIB
    stall_threshold_seconds: float = 60.0
    stall_scan_interval_seconds: float = 60.0
    job_retention_seconds: float = 60.0
    transcribe_workers: int = 4
    public_base_url: str = "http://localhost:8000"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_transcription_model: str = "whisper-1"
    openai_transcription_language: str | None = "en"
    openai_user_agent: str | None = "SermonCast/0.1"
    openai_request_timeout_seconds: float = 300.0
    openai_max_attempts: int = 3
    openai_retry_backoff_seconds: float = 1.0
    openai_max_retry_backoff_seconds: float | None = 30.0
    download_timeout_seconds: float = 60.0

    @property
    def chunk_root(self) -> Path:
        return self.storage_root / "chunks"

    @property
    def assembled_root(self) -> Path:
        return self.storage_root / "assembled"

    @property
    def compression_root(self) -> Path:
        return self.storage_root / "compression"

    @property
    def media_root(self) -> Path:
        return self.storage_root / "media"

    @property
    def records_root(self) -> Path:
        return self.storage_root / "records"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables with sensible defaults."""
        root_override = os.getenv("SERMONCAST_STORAGE_DIR")
        if root_override:
            storage_root = Path(root_override).expanduser()
        else:
            storage_root = Path(__file__).resolve().parents[3] / "storage"

        redis_url = os.getenv("SERMONCAST_REDIS_URL", "redis://localhost:6379/0")
        job_queue_name = os.getenv("SERMONCAST_JOB_QUEUE_NAME", "sermoncast:jobs")
        ffmpeg_path = os.getenv("SERMONCAST_FFMPEG_PATH", "ffmpeg")
        public_base_url = os.getenv(
            "SERMONCAST_PUBLIC_BASE_URL", "http://localhost:8000"
        )

        job_timeout_seconds = _int_env("SERMONCAST_JOB_TIMEOUT", "900")
        in_memory_limit = _int_env(
            "SERMONCAST_IN_MEMORY_ASSEMBLY_LIMIT", str(50 * _MIB)
        )
        size_limit = _int_env("SERMONCAST_TRANSCRIPTION_SIZE_LIMIT", str(25 * _MIB))
        stall_threshold = _float_env("SERMONCAST_STALL_THRESHOLD_SECONDS", "60")
        stall_interval = _float_env("SERMONCAST_STALL_SCAN_INTERVAL_SECONDS", "60")
        retention = _float_env("SERMONCAST_JOB_RETENTION_SECONDS", "60")
        workers = _int_env("SERMONCAST_TRANSCRIBE_WORKERS", "4")

        if size_limit <= 0:
            raise ValueError("SERMONCAST_TRANSCRIPTION_SIZE_LIMIT must be positive.")
        if workers < 1:
            raise ValueError("SERMONCAST_TRANSCRIBE_WORKERS must be at least 1.")

        openai_api_key = os.getenv("OPENAI_API_KEY")
        openai_base_url = os.getenv(
            "SERMONCAST_OPENAI_BASE_URL", "https://api.openai.com/v1"
        )
        openai_model = os.getenv("SERMONCAST_TRANSCRIBE_MODEL", "whisper-1")
        openai_language = os.getenv("SERMONCAST_TRANSCRIBE_LANGUAGE", "en") or None
        openai_user_agent = (
            os.getenv("SERMONCAST_TRANSCRIBE_USER_AGENT", "SermonCast/0.1") or None
        )

        request_timeout_seconds = _float_env("SERMONCAST_TRANSCRIBE_TIMEOUT", "300")
        max_attempts = _int_env("SERMONCAST_TRANSCRIBE_MAX_ATTEMPTS", "3")
        retry_backoff_seconds = _float_env(
            "SERMONCAST_TRANSCRIBE_BACKOFF_SECONDS", "1.0"
        )

        max_retry_backoff_raw = os.getenv(
            "SERMONCAST_TRANSCRIBE_MAX_BACKOFF_SECONDS", "30.0"
        )
        max_retry_backoff_seconds: float | None
        if max_retry_backoff_raw in (None, "", "none", "None"):
            max_retry_backoff_seconds = None
        else:
            try:
                max_retry_backoff_seconds = float(max_retry_backoff_raw)
            except ValueError as exc:
                raise ValueError(
                    "SERMONCAST_TRANSCRIBE_MAX_BACKOFF_SECONDS must be numeric or empty."
                ) from exc

        download_timeout_seconds = _float_env("SERMONCAST_DOWNLOAD_TIMEOUT", "60")

        return cls(
            storage_root=storage_root.resolve(strict=False),
            redis_url=redis_url,
            job_queue_name=job_queue_name,
            job_timeout_seconds=job_timeout_seconds,
            ffmpeg_path=ffmpeg_path,
            in_memory_assembly_limit_bytes=in_memory_limit,
            transcription_size_limit_bytes=size_limit,
            stall_threshold_seconds=stall_threshold,
            stall_scan_interval_seconds=stall_interval,
            job_retention_seconds=retention,
            transcribe_workers=workers,
            public_base_url=public_base_url,
            openai_api_key=openai_api_key,
            openai_base_url=openai_base_url,
            openai_transcription_model=openai_model,
            openai_transcription_language=openai_language,
            openai_user_agent=openai_user_agent,
            openai_request_timeout_seconds=request_timeout_seconds,
            openai_max_attempts=max_attempts,
            openai_retry_backoff_seconds=retry_backoff_seconds,
            openai_max_retry_backoff_seconds=max_retry_backoff_seconds,
            download_timeout_seconds=download_timeout_seconds,
        )


def _int_env(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer.") from exc


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric.") from exc


def get_settings() -> Settings:
    """Return cached settings instance, constructing it on first access."""
    global _SETTINGS_CACHE

    if _SETTINGS_CACHE is None:
        _SETTINGS_CACHE = Settings.from_env()

    return _SETTINGS_CACHE


def set_settings(settings: Settings | None) -> None:
    """Override the cached settings value (mainly intended for tests)."""
    global _SETTINGS_CACHE
    _SETTINGS_CACHE = settings


__all__ = ["Settings", "get_settings", "set_settings"]
