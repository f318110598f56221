"""Media processing helpers."""

from .audio import AudioEncodeError, EncodeParameters, encode_audio
from .compression import (
    COMPRESSION_TIERS,
    CompressionAttempt,
    CompressionResult,
    compress_to_target,
    select_tier,
)
from .storage import LocalMediaStorage, StoredMedia

__all__ = [
    "AudioEncodeError",
    "COMPRESSION_TIERS",
    "CompressionAttempt",
    "CompressionResult",
    "EncodeParameters",
    "LocalMediaStorage",
    "StoredMedia",
    "compress_to_target",
    "encode_audio",
    "select_tier",
]
