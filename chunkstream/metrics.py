from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

sessions_created_total = Counter("sessions_created_total", "Total upload sessions created")
sessions_deleted_total = Counter("sessions_deleted_total", "Total upload sessions deleted")
chunks_received_total = Counter("chunks_received_total", "Total chunks staged")
bytes_staged_total = Counter("bytes_staged_total", "Total chunk bytes staged")
chunk_receive_failures_total = Counter("chunk_receive_failures_total", "Total failed chunk staging writes")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")
finalize_total = Counter("finalize_total", "Finalize attempts by outcome", ["outcome"])
reassembled_bytes_total = Counter("reassembled_bytes_total", "Total bytes written to the blob store")
streamed_bytes_total = Counter("streamed_bytes_total", "Total blob bytes streamed to clients")
range_requests_total = Counter("range_requests_total", "Blob stream requests by response status", ["status_code"])

task_queue_depth = Gauge("task_queue_depth", "Current staging write queue depth")
inflight_writes = Gauge("inflight_writes", "Current inflight staging writes")
worker_count = Gauge("worker_count", "Configured worker count")
worker_busy_count = Gauge("worker_busy_count", "Approximate busy workers")

staging_write_latency_seconds = Histogram("staging_write_latency_seconds", "Chunk staging write latency in seconds")
reassembly_latency_seconds = Histogram("reassembly_latency_seconds", "Reassembly duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
