"""CLI utility to compress and transcribe a standalone sermon recording."""

from __future__ import annotations

import argparse
import json
import os
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Sequence

BACKEND_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = BACKEND_ROOT.parent
SRC_ROOT = BACKEND_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from sermoncast_backend.media import compress_to_target
from sermoncast_backend.settings import get_settings
from sermoncast_backend.tasks.transcribe import build_transcription_config
from sermoncast_backend.transcription import transcribe_file


def _load_dotenv_if_needed() -> None:
    dotenv_path = PROJECT_ROOT / ".env"
    if not dotenv_path.exists():
        return

    for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        os.environ.setdefault(key, value.strip().strip('"').strip("'"))


def _create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compress a recording to the transcription limit and transcribe it.",
    )
    parser.add_argument("audio", type=Path, help="Path to the source audio file")
    parser.add_argument(
        "--target-mb",
        type=float,
        default=None,
        help="Target size in MiB. Defaults to the configured transcription limit.",
    )
    parser.add_argument(
        "--compress-only",
        action="store_true",
        help="Only compress; print the compression report and keep the output.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Optional path to write the transcript text.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _create_parser()
    args = parser.parse_args(argv)

    source_path: Path = args.audio.resolve()
    if not source_path.exists():
        parser.error(f"source file does not exist: {source_path}")

    _load_dotenv_if_needed()
    settings = get_settings()
    target = (
        int(args.target_mb * 1024 * 1024)
        if args.target_mb
        else settings.transcription_size_limit_bytes
    )

    if args.compress_only:
        result = compress_to_target(
            source_path,
            target,
            output_dir=source_path.parent,
            ffmpeg_path=settings.ffmpeg_path,
        )
        report = {
            "path": str(result.path),
            "input_size_bytes": result.input_size_bytes,
            "output_size_bytes": result.output_size_bytes,
            "within_target": result.within_target,
            "tiers": [attempt.tier for attempt in result.attempts],
        }
        sys.stdout.write(json.dumps(report, indent=2) + "\n")
        return 0

    config = build_transcription_config(settings)
    with tempfile.TemporaryDirectory(prefix="sermoncast_transcribe_") as tmp_dir:
        result = compress_to_target(
            source_path,
            target,
            output_dir=Path(tmp_dir),
            ffmpeg_path=settings.ffmpeg_path,
        )
        text = transcribe_file(
            result.path, record_id=f"cli-{uuid.uuid4().hex[:8]}", config=config
        )

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(text, encoding="utf-8")
    else:
        sys.stdout.write(text + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
