from __future__ import annotations

import json
import logging
import time

from chunkserve.locks import KeyedLock
from chunkserve.metrics import stale_chunks_deleted_total
from chunkserve.storage import TransferStorage

logger = logging.getLogger("chunkserve.request")


def cleanup_once(
    storage: TransferStorage,
    locks: KeyedLock,
    ttl_seconds: int,
    now: float | None = None,
) -> dict[str, int]:
    """Delete temporary chunks untouched for longer than ``ttl_seconds``.

    Transfers abandoned mid-upload never reach reassembly, so their chunks
    would otherwise stay on disk forever.
    """
    current = time.time() if now is None else now
    stale_before = current - ttl_seconds

    stale_by_file: dict[str, list] = {}
    for entry in storage.list_chunks():
        if entry.modified_at < stale_before:
            stale_by_file.setdefault(entry.key.file_name, []).append(entry)

    deleted = 0
    affected: set[str] = set()
    for file_name, entries in stale_by_file.items():
        with locks.hold(file_name):
            for entry in entries:
                # A resumed upload may have rewritten the chunk since the listing.
                modified_at = storage.chunk_modified_at(entry.key)
                if modified_at is None or modified_at >= stale_before:
                    continue
                try:
                    storage.delete_chunk(entry.key)
                except OSError as exc:
                    # Keep sweeping the rest; the next pass retries this key.
                    logger.warning(
                        json.dumps(
                            {
                                "event": "cleanup_delete_failed",
                                "file_name": file_name,
                                "chunk_index": entry.key.chunk_index,
                                "detail": str(exc),
                            },
                            sort_keys=True,
                            separators=(",", ":"),
                        )
                    )
                    continue
                deleted += 1
                affected.add(file_name)
            if not storage.chunk_indexes(file_name):
                storage.purge_chunks(file_name)

    stale_chunks_deleted_total.inc(deleted)
    return {"stale_chunks_deleted": deleted, "transfers_affected": len(affected)}
