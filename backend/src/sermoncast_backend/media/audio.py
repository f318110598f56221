"""FFmpeg-based audio encoding helpers."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class AudioEncodeError(RuntimeError):
    """Raised when the external encoder fails or produces no output."""


@dataclass(slots=True, frozen=True)
class EncodeParameters:
    """Lossy encoding parameters for a single encoder pass.

    ``channels`` of ``None`` keeps the channel layout of the input.
    """

    bitrate_kbps: int
    sample_rate: int
    channels: int | None = 1
    audio_codec: str = "libmp3lame"


def encode_audio(
    source: Path,
    destination: Path,
    parameters: EncodeParameters,
    *,
    ffmpeg_path: str = "ffmpeg",
) -> Path:
    """Re-encode ``source`` into ``destination`` and block until ffmpeg exits."""
    if not source.exists():
        raise FileNotFoundError(f"audio file does not exist: {source}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    command = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-i",
        str(source),
        "-vn",
        "-acodec",
        parameters.audio_codec,
        "-b:a",
        f"{parameters.bitrate_kbps}k",
        "-ar",
        str(parameters.sample_rate),
    ]
    if parameters.channels is not None:
        command.extend(["-ac", str(parameters.channels)])
    command.append(str(destination))

    logger.info(
        "Encoding %s -> %s (%dkbps, %sHz, channels=%s)",
        source.name,
        destination.name,
        parameters.bitrate_kbps,
        parameters.sample_rate,
        parameters.channels if parameters.channels is not None else "input",
    )

    try:
        subprocess.run(command, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise AudioEncodeError(
            "FFmpeg binary was not found. Set SERMONCAST_FFMPEG_PATH or install ffmpeg.",
        ) from exc
    except subprocess.CalledProcessError as exc:
        raise AudioEncodeError(
            f"FFmpeg failed with exit code {exc.returncode}: {exc.stderr}",
        ) from exc

    if not destination.exists() or destination.stat().st_size == 0:
        raise AudioEncodeError(
            "FFmpeg reported success but no audio file was produced."
        )

    return destination


__all__ = ["AudioEncodeError", "EncodeParameters", "encode_audio"]
