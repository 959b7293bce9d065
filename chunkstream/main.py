import asyncio
import hashlib
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

from chunkstream.blobstore import BlobLocator, build_blob_store, build_legacy_store, is_valid_handle
from chunkstream.config import Settings, settings
from chunkstream.db import SessionLocal, init_db
from chunkstream.errors import (
    Conflict,
    IncompleteUpload,
    InvalidArgument,
    NotFound,
    ServiceError,
    UnknownUploadSession,
)
from chunkstream.events import audit_event, log_event, trace_id
from chunkstream.lifecycle import Lifecycle
from chunkstream.limits import PerUploadInflightLimiter, SessionLocks
from chunkstream.metrics import (
    bytes_staged_total,
    chunk_receive_failures_total,
    chunks_received_total,
    http_request_duration_seconds,
    metrics_response,
    sessions_created_total,
    staging_write_latency_seconds,
)
from chunkstream.reassembly import Reassembler
from chunkstream.schemas import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    CompleteUploadResponse,
    DeleteOutcomeResponse,
    DeleteUploadResponse,
    ErrorResponse,
    InitUploadRequest,
    InitUploadResponse,
    MissingChunksResponse,
    SessionListResponse,
    SessionResponse,
    UploadChunkResponse,
)
from chunkstream.sessions import SessionStore, SessionView
from chunkstream.staging import ChunkStaging
from chunkstream.streaming import stream_blob
from chunkstream.tracing import setup_tracing
from chunkstream.worker import BackpressureExecutor


@dataclass
class Services:
    sessions: SessionStore
    staging: ChunkStaging
    blobs: BlobLocator
    reassembler: Reassembler
    lifecycle: Lifecycle
    executor: BackpressureExecutor
    upload_limiter: PerUploadInflightLimiter


def build_services(config: Settings = settings) -> Services:
    sessions = SessionStore(
        SessionLocal,
        max_name_length=config.max_name_length,
        default_limit=config.list_default_limit,
        max_limit=config.list_max_limit,
    )
    staging = ChunkStaging(Path(config.storage_root) / config.staging_dir)
    blobs = BlobLocator(build_blob_store(config), build_legacy_store(config))
    reassembler = Reassembler(
        sessions,
        staging,
        blobs.primary,
        locks=SessionLocks(),
        piece_size=config.transfer_piece_bytes,
        channel_depth=config.transfer_channel_depth,
    )
    lifecycle = Lifecycle(
        sessions,
        staging,
        blobs,
        bulk_max=config.bulk_delete_max,
        stale_upload_ttl_seconds=config.stale_upload_ttl_seconds,
    )
    executor = BackpressureExecutor(
        workers=config.worker_count,
        queue_maxsize=config.task_queue_maxsize,
        global_inflight_limit=config.max_global_inflight_writes,
    )
    return Services(
        sessions=sessions,
        staging=staging,
        blobs=blobs,
        reassembler=reassembler,
        lifecycle=lifecycle,
        executor=executor,
        upload_limiter=PerUploadInflightLimiter(config.max_inflight_chunks_per_upload),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if settings.auto_create_schema:
        init_db()

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(app.state.services.lifecycle.cleanup_once)
                log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
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


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.services = build_services()
setup_tracing(app)


def get_services(request: Request) -> Services:
    return request.app.state.services


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _playback_url(upload_id: str) -> str:
    return f"/v1/uploads/{upload_id}/content"


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        416: "range_not_satisfiable",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


COMMON_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


def _error_payload(request: Request, detail: str, error_code: str, retry: str, context: dict | None = None) -> dict:
    upload_id = _upload_id(request) or (context or {}).get("upload_id")
    return {
        "detail": detail,
        "error_code": error_code,
        "retry": retry,
        "request_id": _request_id(request),
        "upload_id": upload_id,
        "trace_id": trace_id(),
        "context": jsonable_encoder(context) if context else None,
    }


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Chunkstream-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    _log_request_error(
        request,
        exc.status_code,
        "client_error" if exc.status_code < 500 else exc.error_code,
        exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(request, exc.detail, exc.error_code, exc.retry, exc.context),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    _log_request_error(request, 400, "client_error", "request validation failed")
    return JSONResponse(
        status_code=400,
        content=_error_payload(
            request, "request validation failed", "invalid_argument", "never", {"errors": exc.errors()}
        ),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    _log_request_error(
        request,
        exc.status_code,
        "client_error" if 400 <= exc.status_code < 500 else "server_error",
        str(exc.detail),
    )
    retry = "now" if exc.status_code == 429 or exc.status_code >= 500 else "never"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(request, str(exc.detail), _error_code_for_status(exc.status_code), retry),
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return JSONResponse(
        status_code=500,
        content=_error_payload(request, "internal server error", "internal_error", "now"),
    )


def _session_response(view: SessionView) -> SessionResponse:
    return SessionResponse(
        upload_id=view.upload_id,
        original_name=view.original_name,
        stored_name=view.stored_name,
        blob_handle=view.blob_handle,
        file_size=view.declared_size,
        mime_type=view.mime_type,
        total_chunks=view.total_chunks,
        received_chunks=list(view.received_chunks),
        received_count=view.received_count,
        progress=view.progress,
        status=view.status,
        created_at=view.created_at,
        updated_at=view.updated_at,
        playback_url=_playback_url(view.upload_id) if view.is_completed else "",
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "blob_backend": settings.blob_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/v1/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(services: Services = Depends(get_services)) -> dict:
    stats = services.lifecycle.cleanup_once()
    return {"status": "ok", **stats}


@app.post(
    "/v1/uploads/init",
    response_model=InitUploadResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES},
)
def init_upload(
    request: Request,
    payload: InitUploadRequest,
    services: Services = Depends(get_services),
) -> InitUploadResponse:
    view = services.sessions.create(
        payload.file_name,
        payload.total_chunks,
        declared_size=payload.file_size,
        mime_type=payload.mime_type,
    )
    sessions_created_total.inc()
    audit_event(
        {
            "event": "audit",
            "action": "upload_init",
            "request_id": _request_id(request),
            "upload_id": view.upload_id,
            "stored_name": view.stored_name,
            "total_chunks": view.total_chunks,
            "declared_size": view.declared_size,
        }
    )
    return InitUploadResponse(
        upload_id=view.upload_id,
        stored_name=view.stored_name,
        total_chunks=view.total_chunks,
        status=view.status,
    )


@app.get("/v1/uploads", response_model=SessionListResponse)
def list_uploads(
    limit: int | None = Query(default=None),
    services: Services = Depends(get_services),
) -> SessionListResponse:
    return SessionListResponse(items=[_session_response(view) for view in services.sessions.list(limit)])


@app.post(
    "/v1/uploads/delete",
    response_model=BulkDeleteResponse,
    responses={**COMMON_ERROR_RESPONSES},
)
def delete_uploads(
    request: Request,
    payload: BulkDeleteRequest,
    services: Services = Depends(get_services),
) -> BulkDeleteResponse:
    upload_ids = [str(item).strip() for item in payload.upload_ids if str(item).strip()]
    if not upload_ids:
        raise InvalidArgument("upload_ids required")
    outcome = services.lifecycle.delete_many(upload_ids)
    audit_event(
        {
            "event": "audit",
            "action": "upload_bulk_delete",
            "request_id": _request_id(request),
            "requested": len(upload_ids),
            "deleted_count": outcome.deleted_count,
        }
    )
    return BulkDeleteResponse(
        ok=True,
        deleted_count=outcome.deleted_count,
        results=[
            DeleteOutcomeResponse(upload_id=item.upload_id, deleted=item.deleted, reason=item.reason)
            for item in outcome.results
        ],
    )


@app.get(
    "/v1/uploads/{upload_id}",
    response_model=SessionResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def get_upload(upload_id: str, services: Services = Depends(get_services)) -> SessionResponse:
    return _session_response(services.sessions.get(upload_id))


@app.delete(
    "/v1/uploads/{upload_id}",
    response_model=DeleteUploadResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def delete_upload(
    request: Request,
    upload_id: str,
    services: Services = Depends(get_services),
) -> DeleteUploadResponse:
    services.lifecycle.delete_session(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_delete",
            "request_id": _request_id(request),
            "upload_id": upload_id,
        }
    )
    return DeleteUploadResponse(ok=True, upload_id=upload_id)


@app.put(
    "/v1/uploads/{upload_id}/chunks/{chunk_index}",
    response_model=UploadChunkResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        409: {"model": ErrorResponse, "description": "Upload already completed"},
        429: {"model": ErrorResponse, "description": "Throttled request"},
    },
)
async def upload_chunk(
    upload_id: str,
    chunk_index: int,
    request: Request,
    content_length: int = Header(default=0),
    chunk_sha256: str | None = Header(default=None, alias="X-Chunk-SHA256"),
    services: Services = Depends(get_services),
) -> UploadChunkResponse:
    try:
        view = await asyncio.to_thread(services.sessions.get, upload_id)
    except NotFound as exc:
        raise UnknownUploadSession("upload session not found", upload_id=upload_id) from exc
    if view.is_completed:
        raise Conflict("upload is not accepting chunks", upload_id=upload_id, status=view.status)
    if chunk_index < 0 or chunk_index >= view.total_chunks:
        raise InvalidArgument("chunk index out of bounds", chunk_index=chunk_index, total_chunks=view.total_chunks)
    if content_length > settings.max_chunk_size_bytes:
        raise InvalidArgument("chunk payload too large", max_chunk_size_bytes=settings.max_chunk_size_bytes)

    body = await request.body()
    if not body:
        raise InvalidArgument("chunk payload is empty")
    if len(body) > settings.max_chunk_size_bytes:
        raise InvalidArgument("chunk payload too large", max_chunk_size_bytes=settings.max_chunk_size_bytes)
    if content_length and content_length != len(body):
        raise InvalidArgument("content-length mismatch")
    if chunk_sha256 and chunk_sha256.lower() != hashlib.sha256(body).hexdigest():
        raise InvalidArgument("chunk checksum mismatch", chunk_index=chunk_index)

    services.upload_limiter.acquire(upload_id)
    try:
        started = time.perf_counter()
        try:
            await asyncio.wrap_future(services.executor.submit(services.staging.put, upload_id, chunk_index, body))
        except OSError as exc:
            chunk_receive_failures_total.inc()
            raise ServiceError(f"chunk staging failed: {exc}", upload_id=upload_id, chunk_index=chunk_index) from exc
        staging_write_latency_seconds.observe(time.perf_counter() - started)
        try:
            await asyncio.to_thread(services.sessions.record_chunk_received, upload_id, chunk_index)
        except NotFound as exc:
            raise UnknownUploadSession("upload session not found", upload_id=upload_id) from exc
        except Conflict:
            # Finalize won the race; drop the chunk staged after it.
            await asyncio.to_thread(services.staging.purge, upload_id)
            raise
    finally:
        services.upload_limiter.release(upload_id)

    chunks_received_total.inc()
    bytes_staged_total.inc(len(body))
    view = await asyncio.to_thread(services.sessions.get, upload_id)
    return UploadChunkResponse(
        upload_id=upload_id,
        chunk_index=chunk_index,
        received_count=view.received_count,
        total_chunks=view.total_chunks,
    )


@app.post(
    "/v1/uploads/{upload_id}/complete",
    response_model=CompleteUploadResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Upload not found"},
        409: {"model": ErrorResponse, "description": "Chunks missing"},
    },
)
def complete_upload(
    request: Request,
    upload_id: str,
    services: Services = Depends(get_services),
) -> CompleteUploadResponse:
    result = services.reassembler.finalize(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_complete",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "blob_handle": result.blob_handle,
            "idempotent_replay": result.already_completed,
        }
    )
    return CompleteUploadResponse(
        upload_id=upload_id,
        status="COMPLETED",
        blob_handle=result.blob_handle,
        playback_url=_playback_url(upload_id),
        already_completed=result.already_completed,
    )


@app.get(
    "/v1/uploads/{upload_id}/missing-chunks",
    response_model=MissingChunksResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload not found"}},
)
def missing_chunks(upload_id: str, services: Services = Depends(get_services)) -> MissingChunksResponse:
    view = services.sessions.get(upload_id)
    return MissingChunksResponse(
        upload_id=upload_id,
        missing_chunk_indexes=view.missing_indices(),
        status=view.status,
    )


@app.get(
    "/v1/uploads/{upload_id}/content",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Upload not found"},
        409: {"model": ErrorResponse, "description": "Upload not completed"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
def upload_content(
    upload_id: str,
    range: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Response:
    view = services.sessions.get(upload_id)
    if not view.is_completed:
        raise IncompleteUpload(
            "upload not completed yet",
            upload_id=upload_id,
            received=view.received_count,
            expected=view.total_chunks,
        )
    if view.blob_handle:
        return RedirectResponse(url=f"/v1/blobs/{view.blob_handle}", status_code=302)
    located = services.blobs.locate(view)
    if located is None:
        raise NotFound("upload has no stored media", upload_id=upload_id)
    store, handle = located
    return stream_blob(store, handle, range)


@app.get(
    "/v1/blobs/{blob_handle}",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Blob not found"},
        416: {"model": ErrorResponse, "description": "Invalid range request"},
    },
)
def get_blob(
    request: Request,
    blob_handle: str,
    range: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Response:
    if not is_valid_handle(blob_handle):
        raise InvalidArgument("invalid blob handle", blob_handle=blob_handle)
    response = stream_blob(services.blobs.primary, blob_handle, range)
    audit_event(
        {
            "event": "audit",
            "action": "stream",
            "request_id": _request_id(request),
            "blob_handle": blob_handle,
            "status_code": response.status_code,
            "range_requested": bool(range),
        }
    )
    return response
