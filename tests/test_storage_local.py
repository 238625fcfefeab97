import os
from pathlib import Path

import pytest

from chunkserve.errors import StorageWriteError
from chunkserve.models import ChunkKey
from chunkserve.storage import InMemoryTransferStorage, LocalTransferStorage, is_valid_file_name


def test_local_storage_write_and_read(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))
    key = ChunkKey(file_name="a.bin", chunk_index=2)

    storage.put_chunk(key, b"payload")
    assert storage.get_chunk(key) == b"payload"
    assert (tmp_path / "chunks" / "a.bin" / "2.part").read_bytes() == b"payload"
    assert storage.chunk_indexes("a.bin") == {2}


def test_local_storage_overwrites_same_key(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))
    key = ChunkKey(file_name="a.bin", chunk_index=0)

    storage.put_chunk(key, b"first")
    storage.put_chunk(key, b"second")
    assert storage.get_chunk(key) == b"second"
    assert storage.chunk_indexes("a.bin") == {0}
    assert sorted(p.name for p in (tmp_path / "chunks" / "a.bin").iterdir()) == ["0.part"]


def test_local_storage_missing_chunk_raises(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))
    with pytest.raises(FileNotFoundError):
        storage.get_chunk(ChunkKey(file_name="a.bin", chunk_index=0))
    assert storage.chunk_indexes("a.bin") == set()


def test_local_storage_write_failure_surfaces_storage_error(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))
    (tmp_path / "chunks").write_bytes(b"not a directory")

    with pytest.raises(StorageWriteError) as exc_info:
        storage.put_chunk(ChunkKey(file_name="a.bin", chunk_index=0), b"data")
    assert exc_info.value.retryable
    assert exc_info.value.file_name == "a.bin"


def test_local_artifact_commit_and_ranged_read(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))

    with storage.open_artifact("a.bin") as writer:
        writer.append(b"AAAA")
        assert storage.artifact_size("a.bin") is None
        writer.append(b"BBBB")
        writer.append(b"CC")

    assert writer.size == 10
    assert storage.artifact_size("a.bin") == 10
    assert b"".join(storage.iter_artifact("a.bin", 0, 9, block_size=3)) == b"AAAABBBBCC"
    assert b"".join(storage.iter_artifact("a.bin", 4, 7, block_size=3)) == b"BBBB"
    assert list(storage.iter_artifact("a.bin", 9, 9, block_size=3)) == [b"C"]
    assert not (tmp_path / "staging" / "a.bin").exists()


def test_local_artifact_discarded_when_block_raises(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))

    with pytest.raises(RuntimeError):
        with storage.open_artifact("a.bin") as writer:
            writer.append(b"AAAA")
            raise RuntimeError("boom")

    assert storage.artifact_size("a.bin") is None
    assert not (tmp_path / "staging" / "a.bin").exists()


def test_local_list_and_purge_chunks(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))
    storage.put_chunk(ChunkKey(file_name="a.bin", chunk_index=0), b"aa")
    storage.put_chunk(ChunkKey(file_name="a.bin", chunk_index=1), b"bbb")
    storage.put_chunk(ChunkKey(file_name="b.bin", chunk_index=0), b"c")

    listed = {(entry.key.file_name, entry.key.chunk_index): entry.size_bytes for entry in storage.list_chunks()}
    assert listed == {("a.bin", 0): 2, ("a.bin", 1): 3, ("b.bin", 0): 1}

    assert storage.purge_chunks("a.bin") == 2
    assert not (tmp_path / "chunks" / "a.bin").exists()
    assert storage.chunk_indexes("b.bin") == {0}


def test_local_list_chunks_reports_modification_time(tmp_path: Path) -> None:
    storage = LocalTransferStorage(str(tmp_path))
    key = ChunkKey(file_name="a.bin", chunk_index=0)
    storage.put_chunk(key, b"aa")
    os.utime(tmp_path / "chunks" / "a.bin" / "0.part", (1000, 1000))

    [entry] = storage.list_chunks()
    assert entry.key == key
    assert entry.modified_at == 1000


def test_memory_storage_matches_local_behaviour() -> None:
    storage = InMemoryTransferStorage()
    storage.put_chunk(ChunkKey(file_name="a.bin", chunk_index=1), b"BBBB")
    storage.put_chunk(ChunkKey(file_name="a.bin", chunk_index=0), b"AAAA")
    assert storage.chunk_indexes("a.bin") == {0, 1}

    with storage.open_artifact("a.bin") as writer:
        writer.append(storage.get_chunk(ChunkKey(file_name="a.bin", chunk_index=0)))
        writer.append(storage.get_chunk(ChunkKey(file_name="a.bin", chunk_index=1)))

    assert storage.artifact_size("a.bin") == 8
    assert b"".join(storage.iter_artifact("a.bin", 2, 5, block_size=3)) == b"AABB"
    assert storage.purge_chunks("a.bin") == 2
    assert storage.list_chunks() == []


@pytest.mark.parametrize("name", ["", ".", "..", "a/b", "a\\b", "a\x00b", "x" * 256])
def test_invalid_file_names(name: str) -> None:
    assert not is_valid_file_name(name)


def test_valid_file_names() -> None:
    assert is_valid_file_name("a.bin")
    assert is_valid_file_name(".hidden")
    assert is_valid_file_name("x" * 255)


def test_file_name_limit_counts_encoded_bytes() -> None:
    assert is_valid_file_name("a" * 255)
    assert not is_valid_file_name("a" * 256)
    assert is_valid_file_name("é" * 127)
    assert not is_valid_file_name("é" * 128)
