import pytest

from chunkserve.downloader import RangeDownloader, parse_range_header
from chunkserve.errors import ArtifactNotFound, RangeNotSatisfiable
from chunkserve.models import ByteRange
from chunkserve.storage import InMemoryTransferStorage

CONTENT = b"AAAABBBBCC"


def _downloader(block_size: int = 3) -> RangeDownloader:
    storage = InMemoryTransferStorage()
    with storage.open_artifact("a.bin") as writer:
        writer.append(CONTENT)
    return RangeDownloader(storage, block_size=block_size)


def test_parse_range_header_variants() -> None:
    assert parse_range_header(None, 10) is None
    assert parse_range_header("bytes=4-7", 10) == ByteRange(start=4, end=7)
    assert parse_range_header("bytes=4-", 10) == ByteRange(start=4, end=9)
    assert parse_range_header("bytes=9-9", 10).length == 1


@pytest.mark.parametrize(
    "header",
    ["bytes=0-10", "bytes=5-4", "bytes=10-", "bytes=-3", "items=0-1", "bytes=0-1,3-4", "bytes=a-b", "bytes="],
)
def test_parse_range_header_rejects(header: str) -> None:
    with pytest.raises(RangeNotSatisfiable) as exc_info:
        parse_range_header(header, 10)
    assert exc_info.value.headers() == {"Content-Range": "bytes */10"}


def test_full_download_without_range() -> None:
    artifact = _downloader().open("a.bin")

    assert not artifact.partial
    assert artifact.total_size == 10
    assert artifact.content_length == 10
    assert b"".join(artifact.body) == CONTENT


def test_range_download_streams_exact_slice() -> None:
    artifact = _downloader().open("a.bin", "bytes=4-7")

    assert artifact.partial
    assert artifact.content_range == "bytes 4-7/10"
    assert artifact.content_length == 4
    assert b"".join(artifact.body) == b"BBBB"


def test_every_valid_range_matches_full_slice() -> None:
    downloader = _downloader(block_size=2)
    for start in range(len(CONTENT)):
        for end in range(start, len(CONTENT)):
            body = b"".join(downloader.open("a.bin", f"bytes={start}-{end}").body)
            assert body == CONTENT[start : end + 1]
            assert len(body) == end - start + 1


def test_unknown_artifact() -> None:
    with pytest.raises(ArtifactNotFound):
        _downloader().open("missing.bin")
    with pytest.raises(ArtifactNotFound):
        _downloader().open("../a.bin")


def test_range_error_names_the_file() -> None:
    with pytest.raises(RangeNotSatisfiable) as exc_info:
        _downloader().open("a.bin", "bytes=0-10")
    assert exc_info.value.file_name == "a.bin"
