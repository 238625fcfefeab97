import time
from threading import Lock

from chunkserve.errors import AlreadyReassembledError, InvalidChunkMetadata, MissingChunkError
from chunkserve.locks import KeyedLock
from chunkserve.metrics import reassemblies_total, reassembly_duration_seconds, reassembly_failures_total
from chunkserve.models import ChunkKey, ReassemblyResult
from chunkserve.storage import TransferStorage, is_valid_file_name


class Reassembler:
    """Merges the temporary chunks of one transfer into its final artifact.

    Chunks are visited strictly by ascending index and appended to a staged
    artifact. The artifact only becomes visible after every chunk has been
    appended and the staged file is committed, so a failure never leaves a
    partial artifact behind. Consumed chunks are deleted once the commit
    succeeds; until then they stay on disk and a later call can retry.
    """

    def __init__(self, storage: TransferStorage, locks: KeyedLock) -> None:
        self.storage = storage
        self.locks = locks
        self._active: set[str] = set()
        self._active_lock = Lock()

    def is_active(self, file_name: str) -> bool:
        with self._active_lock:
            return file_name in self._active

    def reassemble(self, file_name: str, total_chunks: int) -> ReassemblyResult:
        if not is_valid_file_name(file_name):
            raise InvalidChunkMetadata("file name must be a single non-empty path segment", file_name=file_name)
        if total_chunks < 1:
            raise InvalidChunkMetadata("total_chunks must be at least 1", file_name=file_name)

        with self.locks.hold(file_name):
            if self.storage.artifact_size(file_name) is not None:
                raise AlreadyReassembledError(file_name)

            present = self.storage.chunk_indexes(file_name)
            for index in range(total_chunks):
                if index not in present:
                    reassembly_failures_total.inc()
                    raise MissingChunkError(file_name, index)

            with self._active_lock:
                self._active.add(file_name)
            started = time.perf_counter()
            try:
                with self.storage.open_artifact(file_name) as writer:
                    for index in range(total_chunks):
                        key = ChunkKey(file_name=file_name, chunk_index=index)
                        try:
                            data = self.storage.get_chunk(key)
                        except FileNotFoundError as exc:
                            raise MissingChunkError(file_name, index) from exc
                        writer.append(data)
            except Exception:
                reassembly_failures_total.inc()
                raise
            finally:
                with self._active_lock:
                    self._active.discard(file_name)

            # Consumed chunks, plus indexes at or past total_chunks that were
            # never part of this artifact.
            self.storage.purge_chunks(file_name)

        reassembly_duration_seconds.observe(time.perf_counter() - started)
        reassemblies_total.inc()
        return ReassemblyResult(file_name=file_name, total_chunks=total_chunks, size_bytes=writer.size)
