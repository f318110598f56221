"""Chunked upload sessions and reassembly."""

from .reassembly import AssembledMedia, FinalizeState, finalize_upload
from .session import ChunkReceipt, UploadSession, UploadSessionStore

__all__ = [
    "AssembledMedia",
    "ChunkReceipt",
    "FinalizeState",
    "UploadSession",
    "UploadSessionStore",
    "finalize_upload",
]
