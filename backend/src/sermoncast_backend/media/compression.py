"""Adaptive lossy compression that shrinks audio below a byte ceiling."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import CompressionError
from .audio import AudioEncodeError, EncodeParameters, encode_audio

logger = logging.getLogger(__name__)

# OpenAI's transcription endpoint rejects uploads above 25 MB.
DEFAULT_TARGET_SIZE_BYTES = 25 * 1024 * 1024


@dataclass(slots=True, frozen=True)
class CompressionTier:
    """One row of the tier table, selected by ``target / input`` ratio."""

    index: int
    min_ratio: float
    max_ratio: float
    parameters: EncodeParameters

    def matches(self, ratio: float) -> bool:
        return self.min_ratio <= ratio < self.max_ratio


# Ordered by decreasing expected output size.
COMPRESSION_TIERS: tuple[CompressionTier, ...] = (
    CompressionTier(0, 0.9, 1.0, EncodeParameters(96, 22_050, channels=1)),
    CompressionTier(1, 0.7, 0.9, EncodeParameters(80, 22_050, channels=None)),
    CompressionTier(2, 0.5, 0.7, EncodeParameters(64, 16_000, channels=1)),
    CompressionTier(3, 0.0, 0.5, EncodeParameters(48, 16_000, channels=1)),
)

AGGRESSIVE_TIER = CompressionTier(
    len(COMPRESSION_TIERS), 0.0, 0.0, EncodeParameters(32, 8_000, channels=1)
)


@dataclass(slots=True, frozen=True)
class CompressionAttempt:
    """Outcome of a single encoder invocation."""

    tier: int
    parameters: EncodeParameters
    input_size_bytes: int
    output_size_bytes: int | None
    succeeded: bool
    error: str | None = None


@dataclass(slots=True)
class CompressionResult:
    """Final artifact chosen by :func:`compress_to_target`."""

    path: Path
    input_size_bytes: int
    output_size_bytes: int
    target_size_bytes: int
    attempts: list[CompressionAttempt] = field(default_factory=list)

    @property
    def compressed(self) -> bool:
        return bool(self.attempts)

    @property
    def within_target(self) -> bool:
        return self.output_size_bytes <= self.target_size_bytes


def select_tier(input_size_bytes: int, target_size_bytes: int) -> CompressionTier:
    """Return the first-pass tier for an input that exceeds the target."""
    if input_size_bytes <= 0:
        raise ValueError("input_size_bytes must be positive.")
    ratio = target_size_bytes / input_size_bytes
    for tier in COMPRESSION_TIERS:
        if tier.matches(ratio):
            return tier
    # ratio >= 1.0 never reaches here because callers take the fast path.
    return COMPRESSION_TIERS[0]


def _output_path(output_dir: Path, source: Path, suffix: str) -> Path:
    token = uuid.uuid4().hex[:8]
    return output_dir / f"{source.stem}_{token}_{suffix}.mp3"


def compress_to_target(
    input_path: Path,
    target_size_bytes: int = DEFAULT_TARGET_SIZE_BYTES,
    *,
    output_dir: Path | None = None,
    ffmpeg_path: str = "ffmpeg",
) -> CompressionResult:
    """Shrink ``input_path`` until it fits ``target_size_bytes`` or tiers run out.

    Inputs already within budget are returned untouched. Otherwise one pass
    runs at the tier selected by the size ratio; if that output is still too
    large a single aggressive pass follows. A failed first pass raises
    :class:`CompressionError`; a failed second pass falls back to the first
    pass output. The input file is never modified.
    """
    if target_size_bytes <= 0:
        raise ValueError("target_size_bytes must be positive.")
    if not input_path.exists():
        raise FileNotFoundError(f"input file does not exist: {input_path}")

    input_size = input_path.stat().st_size
    if input_size <= target_size_bytes:
        logger.info(
            "%s is %d bytes, within target %d; skipping compression",
            input_path.name,
            input_size,
            target_size_bytes,
        )
        return CompressionResult(
            path=input_path,
            input_size_bytes=input_size,
            output_size_bytes=input_size,
            target_size_bytes=target_size_bytes,
        )

    destination_dir = output_dir or input_path.parent
    destination_dir.mkdir(parents=True, exist_ok=True)

    tier = select_tier(input_size, target_size_bytes)
    logger.info(
        "Compressing %s (%d bytes, ratio %.3f) with tier %d",
        input_path.name,
        input_size,
        target_size_bytes / input_size,
        tier.index,
    )

    attempts: list[CompressionAttempt] = []
    first_output = _output_path(destination_dir, input_path, "compressed")
    try:
        encode_audio(input_path, first_output, tier.parameters, ffmpeg_path=ffmpeg_path)
    except (AudioEncodeError, OSError) as exc:
        raise CompressionError(f"compression of {input_path.name} failed: {exc}") from exc

    first_size = first_output.stat().st_size
    attempts.append(
        CompressionAttempt(
            tier=tier.index,
            parameters=tier.parameters,
            input_size_bytes=input_size,
            output_size_bytes=first_size,
            succeeded=True,
        )
    )
    logger.info("First pass produced %d bytes (target %d)", first_size, target_size_bytes)

    if first_size <= target_size_bytes:
        return CompressionResult(
            path=first_output,
            input_size_bytes=input_size,
            output_size_bytes=first_size,
            target_size_bytes=target_size_bytes,
            attempts=attempts,
        )

    second_output = _output_path(destination_dir, input_path, "compressed_2")
    try:
        encode_audio(
            first_output,
            second_output,
            AGGRESSIVE_TIER.parameters,
            ffmpeg_path=ffmpeg_path,
        )
    except (AudioEncodeError, OSError) as exc:
        logger.warning(
            "Second compression pass failed for %s; keeping first pass: %s",
            input_path.name,
            exc,
        )
        attempts.append(
            CompressionAttempt(
                tier=AGGRESSIVE_TIER.index,
                parameters=AGGRESSIVE_TIER.parameters,
                input_size_bytes=first_size,
                output_size_bytes=None,
                succeeded=False,
                error=str(exc),
            )
        )
        return CompressionResult(
            path=first_output,
            input_size_bytes=input_size,
            output_size_bytes=first_size,
            target_size_bytes=target_size_bytes,
            attempts=attempts,
        )

    second_size = second_output.stat().st_size
    attempts.append(
        CompressionAttempt(
            tier=AGGRESSIVE_TIER.index,
            parameters=AGGRESSIVE_TIER.parameters,
            input_size_bytes=first_size,
            output_size_bytes=second_size,
            succeeded=True,
        )
    )
    logger.info("Second pass produced %d bytes (target %d)", second_size, target_size_bytes)

    try:
        first_output.unlink()
    except OSError as exc:
        logger.warning("Failed to remove intermediate file %s: %s", first_output, exc)

    return CompressionResult(
        path=second_output,
        input_size_bytes=input_size,
        output_size_bytes=second_size,
        target_size_bytes=target_size_bytes,
        attempts=attempts,
    )


__all__ = [
    "AGGRESSIVE_TIER",
    "COMPRESSION_TIERS",
    "CompressionAttempt",
    "CompressionResult",
    "CompressionTier",
    "DEFAULT_TARGET_SIZE_BYTES",
    "compress_to_target",
    "select_tier",
]
