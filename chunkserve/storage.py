import os
import re
import time
from collections.abc import Iterator
from contextlib import suppress
from pathlib import Path
from threading import Lock

from chunkserve.config import settings
from chunkserve.errors import StorageWriteError
from chunkserve.models import ChunkKey, StoredChunk

_CHUNK_FILE = re.compile(r"^(\d+)\.part$")
MAX_FILE_NAME_LENGTH = 255


def is_valid_file_name(file_name: str) -> bool:
    """A logical file name must map onto exactly one path segment.

    The length limit is in encoded bytes, which is what the filesystem counts.
    """
    if not file_name or len(file_name.encode("utf-8", "surrogatepass")) > MAX_FILE_NAME_LENGTH:
        return False
    if file_name in (".", ".."):
        return False
    return not any(ch in file_name for ch in ("/", "\\", "\x00"))


class ArtifactWriter:
    """Append-only writer for a final artifact.

    Bytes go to a staging area first; ``commit`` makes the artifact visible in
    one step and ``discard`` throws the staged bytes away. Used as a context
    manager it commits on a clean exit and discards when the block raises.
    """

    def __init__(self, file_name: str) -> None:
        self.file_name = file_name
        self.size = 0

    def append(self, data: bytes) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError

    def discard(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "ArtifactWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
        else:
            self.discard()
        return False


class TransferStorage:
    def put_chunk(self, key: ChunkKey, data: bytes) -> None:
        raise NotImplementedError

    def get_chunk(self, key: ChunkKey) -> bytes:
        raise NotImplementedError

    def delete_chunk(self, key: ChunkKey) -> None:
        raise NotImplementedError

    def chunk_indexes(self, file_name: str) -> set[int]:
        raise NotImplementedError

    def purge_chunks(self, file_name: str) -> int:
        raise NotImplementedError

    def list_chunks(self) -> list[StoredChunk]:
        raise NotImplementedError

    def chunk_modified_at(self, key: ChunkKey) -> float | None:
        raise NotImplementedError

    def open_artifact(self, file_name: str) -> ArtifactWriter:
        raise NotImplementedError

    def artifact_size(self, file_name: str) -> int | None:
        raise NotImplementedError

    def iter_artifact(self, file_name: str, start: int, end: int, block_size: int) -> Iterator[bytes]:
        raise NotImplementedError


class _LocalArtifactWriter(ArtifactWriter):
    def __init__(self, file_name: str, staging_path: Path, final_path: Path) -> None:
        super().__init__(file_name)
        self._staging_path = staging_path
        self._final_path = final_path
        try:
            staging_path.parent.mkdir(parents=True, exist_ok=True)
            final_path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = staging_path.open("wb")
        except OSError as exc:
            raise self._error("open", exc) from exc

    def _error(self, step: str, exc: OSError) -> StorageWriteError:
        return StorageWriteError(f"failed to {step} artifact {self.file_name!r}: {exc}", file_name=self.file_name)

    def append(self, data: bytes) -> None:
        try:
            self._handle.write(data)
        except OSError as exc:
            raise self._error("write", exc) from exc
        self.size += len(data)

    def commit(self) -> None:
        try:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            os.replace(self._staging_path, self._final_path)
        except OSError as exc:
            self.discard()
            raise self._error("commit", exc) from exc

    def discard(self) -> None:
        with suppress(OSError):
            self._handle.close()
        with suppress(OSError):
            self._staging_path.unlink(missing_ok=True)


class LocalTransferStorage(TransferStorage):
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _chunk_dir(self, file_name: str) -> Path:
        return self.root / "chunks" / file_name

    def _chunk_path(self, key: ChunkKey) -> Path:
        return self._chunk_dir(key.file_name) / f"{key.chunk_index}.part"

    def _artifact_path(self, file_name: str) -> Path:
        return self.root / "artifacts" / file_name

    def _staging_path(self, file_name: str) -> Path:
        return self.root / "staging" / file_name

    def put_chunk(self, key: ChunkKey, data: bytes) -> None:
        target = self._chunk_path(key)
        tmp = target.with_name(f".{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as exc:
            with suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise StorageWriteError(
                f"failed to store chunk {key.chunk_index} of {key.file_name!r}: {exc}",
                file_name=key.file_name,
            ) from exc

    def get_chunk(self, key: ChunkKey) -> bytes:
        return self._chunk_path(key).read_bytes()

    def delete_chunk(self, key: ChunkKey) -> None:
        self._chunk_path(key).unlink(missing_ok=True)

    def chunk_indexes(self, file_name: str) -> set[int]:
        base = self._chunk_dir(file_name)
        if not base.is_dir():
            return set()
        indexes: set[int] = set()
        for path in base.iterdir():
            match = _CHUNK_FILE.match(path.name)
            if match and path.is_file():
                indexes.add(int(match.group(1)))
        return indexes

    def purge_chunks(self, file_name: str) -> int:
        base = self._chunk_dir(file_name)
        if not base.is_dir():
            return 0
        removed = 0
        for path in base.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
        with suppress(OSError):
            base.rmdir()
        return removed

    def list_chunks(self) -> list[StoredChunk]:
        base = self.root / "chunks"
        if not base.is_dir():
            return []
        entries: list[StoredChunk] = []
        for path in base.glob("*/*.part"):
            match = _CHUNK_FILE.match(path.name)
            if not match:
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            key = ChunkKey(file_name=path.parent.name, chunk_index=int(match.group(1)))
            entries.append(StoredChunk(key=key, size_bytes=stat.st_size, modified_at=stat.st_mtime))
        return entries

    def chunk_modified_at(self, key: ChunkKey) -> float | None:
        try:
            return self._chunk_path(key).stat().st_mtime
        except FileNotFoundError:
            return None

    def open_artifact(self, file_name: str) -> ArtifactWriter:
        return _LocalArtifactWriter(file_name, self._staging_path(file_name), self._artifact_path(file_name))

    def artifact_size(self, file_name: str) -> int | None:
        try:
            return self._artifact_path(file_name).stat().st_size
        except FileNotFoundError:
            return None

    def iter_artifact(self, file_name: str, start: int, end: int, block_size: int) -> Iterator[bytes]:
        with self._artifact_path(file_name).open("rb") as handle:
            handle.seek(start)
            remaining = end - start + 1
            while remaining > 0:
                data = handle.read(min(block_size, remaining))
                if not data:
                    break
                yield data
                remaining -= len(data)


class _MemoryArtifactWriter(ArtifactWriter):
    def __init__(self, file_name: str, owner: "InMemoryTransferStorage") -> None:
        super().__init__(file_name)
        self._owner = owner
        self._buffer = bytearray()

    def append(self, data: bytes) -> None:
        self._buffer.extend(data)
        self.size += len(data)

    def commit(self) -> None:
        with self._owner._lock:
            self._owner._artifacts[self.file_name] = bytes(self._buffer)

    def discard(self) -> None:
        self._buffer.clear()


class InMemoryTransferStorage(TransferStorage):
    def __init__(self) -> None:
        self._chunks: dict[ChunkKey, tuple[bytes, float]] = {}
        self._artifacts: dict[str, bytes] = {}
        self._lock = Lock()

    def put_chunk(self, key: ChunkKey, data: bytes) -> None:
        with self._lock:
            self._chunks[key] = (bytes(data), time.time())

    def get_chunk(self, key: ChunkKey) -> bytes:
        with self._lock:
            entry = self._chunks.get(key)
        if entry is None:
            raise FileNotFoundError(f"chunk {key.chunk_index} of {key.file_name!r}")
        return entry[0]

    def delete_chunk(self, key: ChunkKey) -> None:
        with self._lock:
            self._chunks.pop(key, None)

    def chunk_indexes(self, file_name: str) -> set[int]:
        with self._lock:
            return {key.chunk_index for key in self._chunks if key.file_name == file_name}

    def purge_chunks(self, file_name: str) -> int:
        with self._lock:
            keys = [key for key in self._chunks if key.file_name == file_name]
            for key in keys:
                del self._chunks[key]
        return len(keys)

    def list_chunks(self) -> list[StoredChunk]:
        with self._lock:
            return [
                StoredChunk(key=key, size_bytes=len(data), modified_at=modified_at)
                for key, (data, modified_at) in self._chunks.items()
            ]

    def chunk_modified_at(self, key: ChunkKey) -> float | None:
        with self._lock:
            entry = self._chunks.get(key)
        return None if entry is None else entry[1]

    def open_artifact(self, file_name: str) -> ArtifactWriter:
        return _MemoryArtifactWriter(file_name, self)

    def artifact_size(self, file_name: str) -> int | None:
        with self._lock:
            data = self._artifacts.get(file_name)
        return None if data is None else len(data)

    def iter_artifact(self, file_name: str, start: int, end: int, block_size: int) -> Iterator[bytes]:
        with self._lock:
            data = self._artifacts.get(file_name)
        if data is None:
            raise FileNotFoundError(file_name)
        view = memoryview(data)
        for offset in range(start, end + 1, block_size):
            yield bytes(view[offset : min(offset + block_size, end + 1)])


def build_storage() -> TransferStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalTransferStorage(settings.storage_root)
    if backend == "memory":
        return InMemoryTransferStorage()
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")


storage = build_storage()
