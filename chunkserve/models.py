import enum
from collections.abc import Iterator
from dataclasses import dataclass, field


class TransferState(str, enum.Enum):
    receiving = "RECEIVING"
    reassembling = "REASSEMBLING"
    ready = "READY"


@dataclass(frozen=True)
class ChunkKey:
    file_name: str
    chunk_index: int


@dataclass(frozen=True)
class StoredChunk:
    key: ChunkKey
    size_bytes: int
    modified_at: float


@dataclass(frozen=True)
class ReassemblyResult:
    file_name: str
    total_chunks: int
    size_bytes: int


@dataclass(frozen=True)
class ChunkReceipt:
    file_name: str
    chunk_index: int
    total_chunks: int
    state: TransferState
    received_chunks: int
    artifact_size: int | None = None


@dataclass(frozen=True)
class TransferStatus:
    file_name: str
    state: TransferState
    received_chunk_indexes: list[int] = field(default_factory=list)
    missing_chunk_indexes: list[int] | None = None
    artifact_size: int | None = None


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class DownloadSlice:
    file_name: str
    start: int
    end: int
    total_size: int
    partial: bool
    body: Iterator[bytes]

    @property
    def content_length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total_size}"
