import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from chunkserve.config import settings
from chunkserve.downloader import RangeDownloader
from chunkserve.errors import InvalidChunkMetadata, TransferError
from chunkserve.locks import KeyedLock
from chunkserve.maintenance import cleanup_once
from chunkserve.metrics import chunk_receive_failures_total, http_request_duration_seconds, metrics_response
from chunkserve.models import TransferState
from chunkserve.reassembler import Reassembler
from chunkserve.receiver import ChunkReceiver
from chunkserve.schemas import (
    CleanupResponse,
    ErrorResponse,
    ReassembleRequest,
    ReassembleResponse,
    TransferStatusResponse,
    UploadChunkResponse,
)
from chunkserve.storage import storage
from chunkserve.tracing import current_trace_id, setup_tracing
from chunkserve.worker import executor

UPLOAD_PATH = "/v1/uploads"

locks = KeyedLock()
reassembler = Reassembler(storage, locks)
receiver = ChunkReceiver(
    storage,
    reassembler,
    locks,
    completion_policy=settings.completion_policy,
    max_chunk_size=settings.max_chunk_size_bytes,
)
downloader = RangeDownloader(storage, block_size=settings.download_block_size_bytes)


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(cleanup_once, storage, locks, settings.stale_chunk_ttl_seconds)
                if stats["stale_chunks_deleted"]:
                    _log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                _log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
setup_tracing(app)
request_logger = logging.getLogger("chunkserve.request")
if not request_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    request_logger.addHandler(handler)
request_logger.setLevel(logging.INFO)
audit_logger = logging.getLogger("chunkserve.audit")
if not audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
audit_logger.setLevel(logging.INFO)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _file_name(request: Request) -> str | None:
    return request.path_params.get("file_name") or getattr(request.state, "file_name", None)


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _log_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def _audit_event(payload: dict) -> None:
    payload.setdefault("trace_id", current_trace_id())
    audit_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":")))


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        416: "range_not_satisfiable",
        422: "validation_error",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_body(request: Request, detail: str, error_code: str, retryable: bool, file_name: str | None) -> dict:
    return {
        "detail": detail,
        "error_code": error_code,
        "retryable": retryable,
        "request_id": _request_id(request),
        "file_name": file_name,
        "trace_id": current_trace_id(),
    }


COMMON_ERROR_RESPONSES = {
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Chunkserve-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    _log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "file_name": _file_name(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    file_name = exc.file_name or _file_name(request)
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "file_name": file_name,
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "retryable_error" if exc.retryable else "client_error",
            "error_code": exc.error_code,
            "detail": exc.detail,
        }
    )
    content = _error_body(request, exc.detail, exc.error_code, exc.retryable, file_name)
    content.update(exc.payload())
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ())[1:]) or 'request'}: {error.get('msg')}"
        for error in exc.errors()
    )
    if request.url.path == UPLOAD_PATH:
        return await transfer_error_handler(request, InvalidChunkMetadata(detail))
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "file_name": _file_name(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 422,
            "error_class": "client_error",
            "detail": detail,
        }
    )
    return JSONResponse(
        status_code=422,
        content=_error_body(request, detail, "validation_error", False, _file_name(request)),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "file_name": _file_name(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            str(exc.detail),
            _error_code_for_status(exc.status_code),
            exc.status_code == 429,
            _file_name(request),
        ),
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "file_name": _file_name(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "internal server error", "internal_error", False, _file_name(request)),
    )


@app.get("/health")
def health() -> dict[str, str | int]:
    queued, inflight, workers = executor.snapshot()
    return {"status": "ok", "queued_tasks": queued, "inflight_tasks": inflight, "workers": workers}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
        "completion_policy": settings.completion_policy,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post(
    "/v1/admin/cleanup",
    response_model=CleanupResponse,
    responses={**COMMON_ERROR_RESPONSES},
)
def run_cleanup() -> CleanupResponse:
    stats = cleanup_once(storage, locks, settings.stale_chunk_ttl_seconds)
    return CleanupResponse(status="ok", **stats)


@app.post(
    UPLOAD_PATH,
    response_model=UploadChunkResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Invalid chunk metadata"},
        409: {"model": ErrorResponse, "description": "Missing chunk or already reassembled"},
        503: {"model": ErrorResponse, "description": "Storage write failed, retry the chunk"},
    },
)
async def upload_chunk(
    request: Request,
    file: UploadFile = File(...),
    name: str = Form(...),
    chunk_number: int = Form(...),
    total_chunks: int = Form(...),
) -> UploadChunkResponse:
    request.state.file_name = name
    data = await file.read()
    try:
        future = executor.submit(receiver.receive, name, chunk_number, total_chunks, data)
        receipt = await asyncio.wrap_future(future)
    except TransferError:
        chunk_receive_failures_total.inc()
        raise

    _audit_event(
        {
            "event": "audit",
            "action": "chunk_received",
            "request_id": _request_id(request),
            "file_name": name,
            "chunk_index": chunk_number,
            "total_chunks": total_chunks,
            "size_bytes": len(data),
            "state": receipt.state.value,
        }
    )
    if receipt.state == TransferState.ready:
        _audit_event(
            {
                "event": "audit",
                "action": "transfer_reassembled",
                "request_id": _request_id(request),
                "file_name": name,
                "total_chunks": total_chunks,
                "size_bytes": receipt.artifact_size,
            }
        )

    return UploadChunkResponse(
        message="Chunk Uploaded",
        file_name=receipt.file_name,
        chunk_index=receipt.chunk_index,
        total_chunks=receipt.total_chunks,
        state=receipt.state.value,
        received_chunks=receipt.received_chunks,
        artifact_size=receipt.artifact_size,
    )


@app.get(
    "/v1/files/{file_name}/status",
    response_model=TransferStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid file name"}},
)
def transfer_status(file_name: str, total_chunks: int | None = None) -> TransferStatusResponse:
    status = receiver.status(file_name, total_chunks)
    return TransferStatusResponse(
        file_name=status.file_name,
        state=status.state.value,
        received_chunk_indexes=status.received_chunk_indexes,
        missing_chunk_indexes=status.missing_chunk_indexes,
        artifact_size=status.artifact_size,
    )


@app.post(
    "/v1/files/{file_name}/reassemble",
    response_model=ReassembleResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        409: {"model": ErrorResponse, "description": "Missing chunk or already reassembled"},
        503: {"model": ErrorResponse, "description": "Storage write failed"},
    },
)
async def reassemble(request: Request, file_name: str, payload: ReassembleRequest) -> ReassembleResponse:
    future = executor.submit(reassembler.reassemble, file_name, payload.total_chunks)
    result = await asyncio.wrap_future(future)
    _audit_event(
        {
            "event": "audit",
            "action": "reassemble",
            "request_id": _request_id(request),
            "file_name": file_name,
            "total_chunks": result.total_chunks,
            "size_bytes": result.size_bytes,
        }
    )
    return ReassembleResponse(
        file_name=result.file_name,
        total_chunks=result.total_chunks,
        size_bytes=result.size_bytes,
        state=TransferState.ready.value,
    )


@app.get(
    "/v1/files/{file_name}/download",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Artifact not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
def download(
    request: Request,
    file_name: str,
    range_header: str | None = Header(default=None, alias="Range"),
) -> Response:
    artifact = downloader.open(file_name, range_header)
    _audit_event(
        {
            "event": "audit",
            "action": "download",
            "request_id": _request_id(request),
            "file_name": file_name,
            "range_requested": artifact.partial,
            "content_length": artifact.content_length,
        }
    )

    headers = {"Accept-Ranges": "bytes", "Content-Length": str(artifact.content_length)}
    if artifact.partial:
        headers["Content-Range"] = artifact.content_range
    return StreamingResponse(
        artifact.body,
        status_code=206 if artifact.partial else 200,
        media_type="application/octet-stream",
        headers=headers,
    )
