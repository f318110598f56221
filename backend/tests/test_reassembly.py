from __future__ import annotations

import os
import random
from pathlib import Path

import pytest

from sermoncast_backend.errors import (
    ChunkValidationError,
    CorruptChunkError,
    IncompleteUploadError,
    SessionNotFoundError,
)
from sermoncast_backend.uploads import UploadSessionStore, finalize_upload


def _chunks(count: int, size: int = 64) -> list[bytes]:
    return [os.urandom(size) + bytes([index]) for index in range(count)]


def _upload(
    store: UploadSessionStore,
    chunks: list[bytes],
    *,
    upload_id: str = "up-1",
    order: list[int] | None = None,
) -> None:
    for index in order if order is not None else range(len(chunks)):
        store.register_chunk(
            upload_id=upload_id,
            chunk_index=index,
            total_chunks=len(chunks),
            data=chunks[index],
            original_file_name="sermon.mp3",
            extra_fields={"title": "Hope"} if index == 0 else None,
        )


def test_out_of_order_chunks_reassemble_in_index_order(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    chunks = _chunks(6)
    order = list(range(6))
    random.Random(7).shuffle(order)
    _upload(store, chunks, order=order)

    assembled = finalize_upload(
        store,
        upload_id="up-1",
        total_chunks=6,
        original_file_name="sermon.mp3",
        output_dir=tmp_path / "out",
    )

    assert assembled.path.read_bytes() == b"".join(chunks)
    assert assembled.size_bytes == sum(len(chunk) for chunk in chunks)
    assert assembled.extra_fields == {"title": "Hope"}
    assert assembled.path.name == "up-1-sermon.mp3"


def test_streaming_path_produces_identical_bytes(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    chunks = _chunks(4, size=4096)
    _upload(store, chunks)

    assembled = finalize_upload(
        store,
        upload_id="up-1",
        total_chunks=4,
        original_file_name="sermon.mp3",
        output_dir=tmp_path / "out",
        in_memory_limit_bytes=1024,
    )

    assert assembled.path.read_bytes() == b"".join(chunks)


def test_successful_finalize_removes_session(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, _chunks(2))

    finalize_upload(
        store,
        upload_id="up-1",
        total_chunks=2,
        original_file_name="sermon.mp3",
        output_dir=tmp_path / "out",
    )

    assert store.load("up-1") is None
    assert not (tmp_path / "chunks" / "up-1").exists()


def test_missing_chunks_are_reported_sorted(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, _chunks(5), order=[3, 0, 1])

    with pytest.raises(IncompleteUploadError) as excinfo:
        finalize_upload(
            store,
            upload_id="up-1",
            total_chunks=5,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )

    assert excinfo.value.missing == [2, 4]
    assert excinfo.value.as_detail()["missing_chunks"] == [2, 4]
    # Nothing is deleted so the client can resume.
    assert store.load("up-1") is not None
    assert not (tmp_path / "out").exists()


def test_unknown_session_raises(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")

    with pytest.raises(SessionNotFoundError):
        finalize_upload(
            store,
            upload_id="nope",
            total_chunks=1,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )


def test_zero_total_chunks_is_rejected(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")

    with pytest.raises(ChunkValidationError):
        finalize_upload(
            store,
            upload_id="up-1",
            total_chunks=0,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )


def test_deleted_chunk_file_is_corrupt(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, _chunks(3))
    store.chunk_path("up-1", 1).unlink()

    with pytest.raises(CorruptChunkError) as excinfo:
        finalize_upload(
            store,
            upload_id="up-1",
            total_chunks=3,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )

    assert excinfo.value.chunk_index == 1


def test_truncated_chunk_file_is_corrupt(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, _chunks(3))
    store.chunk_path("up-1", 2).write_bytes(b"")

    with pytest.raises(CorruptChunkError, match="empty"):
        finalize_upload(
            store,
            upload_id="up-1",
            total_chunks=3,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )


def test_resized_chunk_file_is_corrupt(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, _chunks(2))
    store.chunk_path("up-1", 0).write_bytes(b"x")

    with pytest.raises(CorruptChunkError, match="does not match"):
        finalize_upload(
            store,
            upload_id="up-1",
            total_chunks=2,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )


def test_finalize_with_fewer_chunks_than_declared_is_rejected(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, _chunks(5, size=10))

    with pytest.raises(ChunkValidationError, match="declares 3 chunks") as excinfo:
        finalize_upload(
            store,
            upload_id="up-1",
            total_chunks=3,
            original_file_name="sermon.mp3",
            output_dir=tmp_path / "out",
        )

    assert "declared 5" in str(excinfo.value)
    assert not (tmp_path / "out").exists()
    session = store.load("up-1")
    assert session is not None
    assert session.received_count == 5


def test_single_one_byte_chunk(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path / "chunks")
    _upload(store, [b"\x00"])

    assembled = finalize_upload(
        store,
        upload_id="up-1",
        total_chunks=1,
        original_file_name="sermon.mp3",
        output_dir=tmp_path / "out",
    )

    assert assembled.path.read_bytes() == b"\x00"
    assert assembled.size_bytes == 1
