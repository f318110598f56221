from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from sermoncast_backend.errors import ChunkValidationError
from sermoncast_backend.uploads import UploadSessionStore
from sermoncast_backend.uploads.session import UploadSession, validate_upload_id


def _register(store: UploadSessionStore, index: int, data: bytes, **overrides):
    params = {
        "upload_id": "u1",
        "chunk_index": index,
        "total_chunks": 3,
        "data": data,
        "original_file_name": "sermon.mp3",
    }
    params.update(overrides)
    return store.register_chunk(**params)


def test_register_chunk_persists_bytes_and_metadata(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)

    receipt = _register(store, 1, b"world")

    assert receipt.received_count == 1
    assert receipt.chunk_index == 1
    assert store.chunk_path("u1", 1).read_bytes() == b"world"

    metadata = json.loads((tmp_path / "u1" / "metadata.json").read_text("utf-8"))
    assert metadata["received_chunks"] == [1]
    assert metadata["chunk_sizes"] == {"1": 5}
    assert metadata["total_chunks"] == 3


def test_resubmitting_chunk_keeps_count_and_latest_bytes(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)

    _register(store, 0, b"first")
    receipt = _register(store, 0, b"second!")

    assert receipt.received_count == 1
    assert store.chunk_path("u1", 0).read_bytes() == b"second!"
    session = store.load("u1")
    assert session is not None
    assert session.chunk_sizes == {0: 7}


def test_empty_chunk_is_rejected_without_state_change(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)
    _register(store, 0, b"abc")

    with pytest.raises(ChunkValidationError):
        _register(store, 1, b"")

    session = store.load("u1")
    assert session is not None
    assert session.received_count == 1
    assert not store.chunk_path("u1", 1).exists()


@pytest.mark.parametrize("index", [-1, 3, 10])
def test_out_of_range_index_is_rejected(tmp_path: Path, index: int) -> None:
    store = UploadSessionStore(tmp_path)

    with pytest.raises(ChunkValidationError):
        _register(store, index, b"abc")

    assert store.load("u1") is None


def test_zero_total_chunks_is_rejected(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)

    with pytest.raises(ChunkValidationError):
        _register(store, 0, b"abc", total_chunks=0)


def test_total_chunks_must_match_existing_session(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)
    _register(store, 0, b"abc")

    with pytest.raises(ChunkValidationError, match="does not match"):
        _register(store, 1, b"def", total_chunks=4)


def test_extra_fields_come_from_first_chunk_that_has_them(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)

    _register(store, 2, b"c")
    _register(store, 0, b"a", extra_fields={"title": "Grace", "speaker": "Ruth"})
    _register(store, 1, b"b", extra_fields={"title": "Overwritten"})

    session = store.load("u1")
    assert session is not None
    assert session.extra_fields == {"title": "Grace", "speaker": "Ruth"}
    assert session.extra_fields_captured is True


@pytest.mark.parametrize("upload_id", ["", "../escape", "a/b", ".hidden"])
def test_unsafe_upload_ids_are_rejected(upload_id: str) -> None:
    with pytest.raises(ChunkValidationError):
        validate_upload_id(upload_id)


def test_concurrent_chunks_are_all_recorded(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)
    total = 24
    errors: list[BaseException] = []

    def _send(index: int) -> None:
        try:
            store.register_chunk(
                upload_id="busy",
                chunk_index=index,
                total_chunks=total,
                data=bytes([index]) * (index + 1),
                original_file_name="long.wav",
            )
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=_send, args=(i,)) for i in range(total)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    session = store.load("busy")
    assert session is not None
    assert session.received_chunks == set(range(total))
    assert session.is_complete()
    assert session.expected_size == sum(range(1, total + 1))


def test_delete_removes_session_directory(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)
    _register(store, 0, b"abc")

    store.delete("u1")
    store.delete("u1")

    assert not (tmp_path / "u1").exists()
    assert store.load("u1") is None


def test_session_round_trips_through_dict() -> None:
    session = UploadSession(
        upload_id="u9",
        original_file_name="a.mp3",
        total_chunks=4,
        received_chunks={0, 3},
        chunk_sizes={0: 10, 3: 2},
    )

    restored = UploadSession.from_dict(session.to_dict())

    assert restored.received_chunks == {0, 3}
    assert restored.chunk_sizes == {0: 10, 3: 2}
    assert restored.missing_chunks() == [1, 2]
    assert restored.missing_chunks(5) == [1, 2, 4]


def test_abandoned_uploads_do_not_keep_locks(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)

    for upload_id in ("a1", "a2", "a3"):
        _register(store, 0, b"abc", upload_id=upload_id)

    assert store._locks == {}


def test_lock_entry_survives_while_held(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)

    with store.lock("u1"):
        assert set(store._locks) == {"u1"}

    assert store._locks == {}


def test_corrupt_metadata_starts_session_afresh(tmp_path: Path) -> None:
    store = UploadSessionStore(tmp_path)
    _register(store, 0, b"abc")
    (tmp_path / "u1" / "metadata.json").write_text("{not json", encoding="utf-8")

    assert store.load("u1") is None

    receipt = _register(store, 1, b"def")

    assert receipt.received_count == 1
    session = store.load("u1")
    assert session is not None
    assert session.received_chunks == {1}
