"""Error taxonomy shared by the upload, reassembly and compression stages."""

from __future__ import annotations

from typing import Any, Iterable


class IngestError(RuntimeError):
    """Base class for failures raised while ingesting an upload."""

    def __init__(self, message: str, *, upload_id: str | None = None) -> None:
        super().__init__(message)
        self.upload_id = upload_id

    def as_detail(self) -> dict[str, Any]:
        """Return a JSON-serialisable description suitable for API responses."""
        detail: dict[str, Any] = {"error": type(self).__name__, "message": str(self)}
        if self.upload_id is not None:
            detail["upload_id"] = self.upload_id
        return detail


class ChunkValidationError(IngestError, ValueError):
    """Raised for missing or malformed chunk parameters. No state is changed."""


class SessionNotFoundError(IngestError):
    """Raised when finalize is requested for an unknown upload id."""


class IncompleteUploadError(IngestError):
    """Raised when finalize is requested before every chunk has arrived."""

    def __init__(self, *, upload_id: str, missing: Iterable[int]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            f"upload {upload_id} is missing chunks {self.missing}",
            upload_id=upload_id,
        )

    def as_detail(self) -> dict[str, Any]:
        detail = super().as_detail()
        detail["missing_chunks"] = list(self.missing)
        return detail


class CorruptChunkError(IngestError):
    """Raised when a recorded chunk has no backing bytes on disk."""

    def __init__(self, *, upload_id: str, chunk_index: int, reason: str) -> None:
        self.chunk_index = chunk_index
        super().__init__(
            f"chunk {chunk_index} of upload {upload_id} is corrupt: {reason}",
            upload_id=upload_id,
        )

    def as_detail(self) -> dict[str, Any]:
        detail = super().as_detail()
        detail["chunk_index"] = self.chunk_index
        return detail


class ReassemblyError(IngestError):
    """Raised when the assembled artifact is missing or has the wrong size.

    This is fatal for the session; the client must restart from chunk 0.
    """


class CompressionError(IngestError):
    """Raised when the first encoder pass fails during compression."""


__all__ = [
    "ChunkValidationError",
    "CompressionError",
    "CorruptChunkError",
    "IncompleteUploadError",
    "IngestError",
    "ReassemblyError",
    "SessionNotFoundError",
]
