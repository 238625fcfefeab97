import re
from collections.abc import Iterator

from chunkserve.errors import ArtifactNotFound, RangeNotSatisfiable
from chunkserve.metrics import bytes_served_total, range_requests_total
from chunkserve.models import ByteRange, DownloadSlice
from chunkserve.storage import TransferStorage, is_valid_file_name

_RANGE = re.compile(r"^bytes=(\d+)-(\d*)$")


def parse_range_header(value: str | None, size: int) -> ByteRange | None:
    """Resolve a ``Range`` header against an artifact of ``size`` bytes.

    Accepts ``bytes=<start>-<end>`` and the open-ended ``bytes=<start>-``.
    Returns None when no header was sent. Offsets past the end are rejected,
    not clamped.
    """
    if value is None:
        return None
    match = _RANGE.match(value.strip())
    if not match:
        raise RangeNotSatisfiable(f"unsupported range header: {value!r}", size=size)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else size - 1
    if start > end or end >= size:
        raise RangeNotSatisfiable(f"range {start}-{end} out of bounds for {size} bytes", size=size)
    return ByteRange(start=start, end=end)


class RangeDownloader:
    def __init__(self, storage: TransferStorage, block_size: int = 64 * 1024) -> None:
        self.storage = storage
        self.block_size = block_size

    def _counted(self, body: Iterator[bytes]) -> Iterator[bytes]:
        for block in body:
            bytes_served_total.inc(len(block))
            yield block

    def open(self, file_name: str, range_header: str | None = None) -> DownloadSlice:
        size = self.storage.artifact_size(file_name) if is_valid_file_name(file_name) else None
        if size is None:
            raise ArtifactNotFound(file_name)

        try:
            byte_range = parse_range_header(range_header, size)
        except RangeNotSatisfiable as exc:
            exc.file_name = file_name
            raise

        if byte_range is None:
            start, end, partial = 0, size - 1, False
        else:
            start, end, partial = byte_range.start, byte_range.end, True
            range_requests_total.inc()

        if end < start:
            body: Iterator[bytes] = iter(())
        else:
            body = self._counted(self.storage.iter_artifact(file_name, start, end, self.block_size))
        return DownloadSlice(
            file_name=file_name,
            start=start,
            end=end,
            total_size=size,
            partial=partial,
            body=body,
        )
