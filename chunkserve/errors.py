"""Failure kinds surfaced by the receiver, reassembler and downloader.

Each error knows the HTTP status it maps to and whether the client should
retry the same request unchanged (``retryable``) or fix it first.
"""


class TransferError(Exception):
    status_code = 500
    error_code = "transfer_error"
    retryable = False

    def __init__(self, detail: str, file_name: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.file_name = file_name

    def headers(self) -> dict[str, str]:
        return {}

    def payload(self) -> dict:
        return {}


class InvalidChunkMetadata(TransferError):
    status_code = 400
    error_code = "invalid_chunk_metadata"


class StorageWriteError(TransferError):
    status_code = 503
    error_code = "storage_write_failed"
    retryable = True

    def headers(self) -> dict[str, str]:
        return {"Retry-After": "1"}


class MissingChunkError(TransferError):
    status_code = 409
    error_code = "missing_chunk"

    def __init__(self, file_name: str, chunk_index: int) -> None:
        super().__init__(f"chunk {chunk_index} of {file_name!r} is missing", file_name=file_name)
        self.chunk_index = chunk_index

    def payload(self) -> dict:
        return {"chunk_index": self.chunk_index}


class AlreadyReassembledError(TransferError):
    status_code = 409
    error_code = "already_reassembled"

    def __init__(self, file_name: str) -> None:
        super().__init__(f"{file_name!r} has already been reassembled", file_name=file_name)


class ArtifactNotFound(TransferError):
    status_code = 404
    error_code = "artifact_not_found"

    def __init__(self, file_name: str) -> None:
        super().__init__(f"{file_name!r} not found", file_name=file_name)


class RangeNotSatisfiable(TransferError):
    status_code = 416
    error_code = "range_not_satisfiable"

    def __init__(self, detail: str, file_name: str | None = None, size: int | None = None) -> None:
        super().__init__(detail, file_name=file_name)
        self.size = size

    def headers(self) -> dict[str, str]:
        if self.size is None:
            return {}
        return {"Content-Range": f"bytes */{self.size}"}
