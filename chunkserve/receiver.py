import time

from chunkserve.errors import AlreadyReassembledError, InvalidChunkMetadata
from chunkserve.locks import KeyedLock
from chunkserve.metrics import bytes_received_total, chunks_received_total, storage_write_latency_seconds
from chunkserve.models import ChunkKey, ChunkReceipt, TransferState, TransferStatus
from chunkserve.reassembler import Reassembler
from chunkserve.storage import TransferStorage, is_valid_file_name

RECEIVED_SET = "received_set"
TERMINAL_CHUNK = "terminal_chunk"
COMPLETION_POLICIES = (RECEIVED_SET, TERMINAL_CHUNK)


class ChunkReceiver:
    def __init__(
        self,
        storage: TransferStorage,
        reassembler: Reassembler,
        locks: KeyedLock,
        completion_policy: str = RECEIVED_SET,
        max_chunk_size: int | None = None,
    ) -> None:
        if completion_policy not in COMPLETION_POLICIES:
            raise ValueError(f"unsupported completion policy: {completion_policy}")
        self.storage = storage
        self.reassembler = reassembler
        self.locks = locks
        self.completion_policy = completion_policy
        self.max_chunk_size = max_chunk_size

    def _validate(self, file_name: str, chunk_index: int, total_chunks: int, data: bytes) -> None:
        if not is_valid_file_name(file_name):
            raise InvalidChunkMetadata("file name must be a single non-empty path segment", file_name=file_name)
        if total_chunks < 1:
            raise InvalidChunkMetadata("total_chunks must be at least 1", file_name=file_name)
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise InvalidChunkMetadata(
                f"chunk index {chunk_index} out of bounds for {total_chunks} chunks", file_name=file_name
            )
        if not data:
            raise InvalidChunkMetadata("chunk payload is empty", file_name=file_name)
        if self.max_chunk_size is not None and len(data) > self.max_chunk_size:
            raise InvalidChunkMetadata(
                f"chunk payload exceeds {self.max_chunk_size} bytes", file_name=file_name
            )

    def _is_complete(self, chunk_index: int, total_chunks: int, received: set[int]) -> bool:
        if self.completion_policy == TERMINAL_CHUNK:
            return chunk_index + 1 == total_chunks
        return all(index in received for index in range(total_chunks))

    def receive(self, file_name: str, chunk_index: int, total_chunks: int, data: bytes) -> ChunkReceipt:
        self._validate(file_name, chunk_index, total_chunks, data)

        with self.locks.hold(file_name):
            if self.storage.artifact_size(file_name) is not None:
                raise AlreadyReassembledError(file_name)

            started = time.perf_counter()
            self.storage.put_chunk(ChunkKey(file_name=file_name, chunk_index=chunk_index), data)
            storage_write_latency_seconds.observe(time.perf_counter() - started)
            chunks_received_total.inc()
            bytes_received_total.inc(len(data))

            received = {index for index in self.storage.chunk_indexes(file_name) if index < total_chunks}
            if not self._is_complete(chunk_index, total_chunks, received):
                return ChunkReceipt(
                    file_name=file_name,
                    chunk_index=chunk_index,
                    total_chunks=total_chunks,
                    state=TransferState.receiving,
                    received_chunks=len(received),
                )

            result = self.reassembler.reassemble(file_name, total_chunks)

        return ChunkReceipt(
            file_name=file_name,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            state=TransferState.ready,
            received_chunks=total_chunks,
            artifact_size=result.size_bytes,
        )

    def status(self, file_name: str, total_chunks: int | None = None) -> TransferStatus:
        if total_chunks is not None and total_chunks < 1:
            raise InvalidChunkMetadata("total_chunks must be at least 1", file_name=file_name)
        if not is_valid_file_name(file_name):
            raise InvalidChunkMetadata("file name must be a single non-empty path segment", file_name=file_name)

        size = self.storage.artifact_size(file_name)
        if size is not None:
            return TransferStatus(file_name=file_name, state=TransferState.ready, artifact_size=size)
        if self.reassembler.is_active(file_name):
            return TransferStatus(file_name=file_name, state=TransferState.reassembling)

        received = sorted(self.storage.chunk_indexes(file_name))
        missing = None
        if total_chunks is not None:
            present = set(received)
            missing = [index for index in range(total_chunks) if index not in present]
        return TransferStatus(
            file_name=file_name,
            state=TransferState.receiving,
            received_chunk_indexes=received,
            missing_chunk_indexes=missing,
        )
