from pydantic import BaseModel, Field


class UploadChunkResponse(BaseModel):
    message: str
    file_name: str
    chunk_index: int
    total_chunks: int
    state: str
    received_chunks: int
    artifact_size: int | None = None


class TransferStatusResponse(BaseModel):
    file_name: str
    state: str
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int] | None = None
    artifact_size: int | None = None


class ReassembleRequest(BaseModel):
    total_chunks: int = Field(gt=0)


class ReassembleResponse(BaseModel):
    file_name: str
    total_chunks: int
    size_bytes: int
    state: str


class CleanupResponse(BaseModel):
    status: str
    stale_chunks_deleted: int
    transfers_affected: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    retryable: bool = False
    request_id: str | None = None
    file_name: str | None = None
    chunk_index: int | None = None
    trace_id: str | None = None
