from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

chunks_received_total = Counter("chunks_received_total", "Total chunks stored")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes stored")
chunk_receive_failures_total = Counter("chunk_receive_failures_total", "Total rejected or failed chunk uploads")
reassemblies_total = Counter("reassemblies_total", "Total completed reassemblies")
reassembly_failures_total = Counter("reassembly_failures_total", "Total failed reassembly attempts")
bytes_served_total = Counter("bytes_served_total", "Total artifact bytes streamed to clients")
range_requests_total = Counter("range_requests_total", "Total partial content downloads")
stale_chunks_deleted_total = Counter("stale_chunks_deleted_total", "Total stale temporary chunks removed")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")

task_queue_depth = Gauge("task_queue_depth", "Current task queue depth")
inflight_tasks = Gauge("inflight_tasks", "Current inflight storage tasks")
worker_count = Gauge("worker_count", "Configured worker count")

storage_write_latency_seconds = Histogram("storage_write_latency_seconds", "Chunk storage write latency in seconds")
reassembly_duration_seconds = Histogram("reassembly_duration_seconds", "Reassembly duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
