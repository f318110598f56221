"""Transcription helpers and OpenAI integrations."""

from .openai import (
    OpenAITranscriptionConfig,
    TranscriptionError,
    transcribe_audio_url,
    transcribe_file,
)
from .source import download_audio, fetch_audio, resolve_audio_url

__all__ = [
    "OpenAITranscriptionConfig",
    "TranscriptionError",
    "download_audio",
    "fetch_audio",
    "resolve_audio_url",
    "transcribe_audio_url",
    "transcribe_file",
]
