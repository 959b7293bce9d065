"""Ordered reassembly of staged chunks into the blob store.

Chunk bytes travel from a reader thread to the blob writer through a
``TransferChannel``: a bounded queue of fixed-size pieces. When the writer
falls behind, the queue fills and the reader blocks on ``send``, so the bytes
held in memory stay bounded by ``depth * piece_size`` (plus the piece each side
is holding) no matter how large the upload is.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass

from chunkstream.blobstore import BlobStore, BlobWriter
from chunkstream.errors import Conflict, IncompleteUpload, IntegrityError, NotFound, ReassemblyFailed
from chunkstream.events import log_event
from chunkstream.limits import SessionLocks
from chunkstream.metrics import finalize_total, reassembled_bytes_total, reassembly_latency_seconds
from chunkstream.sessions import SessionStore, SessionView
from chunkstream.staging import ChunkStaging
from chunkstream.tracing import tracer

_END = object()


@dataclass(frozen=True)
class _ReadFailure:
    index: int | None
    error: Exception


@dataclass(frozen=True)
class FinalizeResult:
    upload_id: str
    blob_handle: str | None
    already_completed: bool
    bytes_written: int = 0


class TransferChannel:
    def __init__(self, depth: int) -> None:
        self.depth = max(1, depth)
        self._queue: queue.Queue = queue.Queue(maxsize=self.depth)
        self._cancelled = threading.Event()
        self.high_water = 0

    def send(self, item, poll_seconds: float = 0.05) -> bool:
        """Block until the item is queued. Returns False if the receiver gave up."""
        while not self._cancelled.is_set():
            try:
                self._queue.put(item, timeout=poll_seconds)
            except queue.Full:
                continue
            self.high_water = max(self.high_water, self._queue.qsize())
            return True
        return False

    def receive(self):
        return self._queue.get()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class Reassembler:
    def __init__(
        self,
        sessions: SessionStore,
        staging: ChunkStaging,
        blob_store: BlobStore,
        locks: SessionLocks | None = None,
        piece_size: int = 256 * 1024,
        channel_depth: int = 4,
    ) -> None:
        self.sessions = sessions
        self.staging = staging
        self.blob_store = blob_store
        self.locks = locks or SessionLocks()
        self.piece_size = piece_size
        self.channel_depth = channel_depth

    def finalize(self, upload_id: str) -> FinalizeResult:
        view = self.sessions.get(upload_id)
        if view.is_completed:
            return self._replay(view)

        with self.locks.hold(upload_id):
            view = self.sessions.get(upload_id)
            if view.is_completed:
                return self._replay(view)

            indices = self.verified_indices(view)
            started = time.perf_counter()
            with tracer.start_as_current_span("reassemble") as span:
                span.set_attribute("chunkstream.upload_id", upload_id)
                span.set_attribute("chunkstream.total_chunks", view.total_chunks)
                handle, written = self._reassemble(view, indices)
            reassembly_latency_seconds.observe(time.perf_counter() - started)

            try:
                self.sessions.mark_completed(upload_id, handle)
            except Conflict:
                # Another worker committed first; its blob is the one the session points at.
                self.blob_store.delete(handle)
                return self._replay(self.sessions.get(upload_id))
            except NotFound:
                self.blob_store.delete(handle)
                raise

            self._purge_staging(upload_id)
            finalize_total.labels(outcome="completed").inc()
            reassembled_bytes_total.inc(written)
            log_event(
                {
                    "event": "reassembly_completed",
                    "upload_id": upload_id,
                    "blob_handle": handle,
                    "total_chunks": view.total_chunks,
                    "bytes_written": written,
                }
            )
            return FinalizeResult(upload_id=upload_id, blob_handle=handle, already_completed=False, bytes_written=written)

    def verified_indices(self, view: SessionView) -> list[int]:
        """Staged chunk indices in write order, checked against the expected range and the recorded set."""
        staged = self.staging.list_indices(view.upload_id)
        ordered = sorted(staged)
        expected = list(range(view.total_chunks))
        if ordered != expected:
            missing = next((idx for idx in expected if idx not in staged), None)
            finalize_total.labels(outcome="incomplete").inc()
            raise IncompleteUpload(
                "not all chunks uploaded yet" if missing is not None else "unexpected chunk files staged",
                upload_id=view.upload_id,
                received=len(ordered),
                expected=view.total_chunks,
                missing_index=missing,
            )

        recorded = set(view.received_chunks)
        if recorded != staged:
            unrecorded = sorted(staged - recorded)
            unstaged = sorted(recorded - staged)
            finalize_total.labels(outcome="integrity_error").inc()
            log_event(
                {
                    "event": "staging_integrity_error",
                    "upload_id": view.upload_id,
                    "unrecorded_indices": unrecorded,
                    "unstaged_indices": unstaged,
                    "error_class": "integrity_error",
                },
                level=logging.ERROR,
            )
            raise IntegrityError(
                "staged chunks disagree with recorded chunks",
                upload_id=view.upload_id,
                unrecorded_indices=unrecorded,
                unstaged_indices=unstaged,
            )
        return ordered

    def _replay(self, view: SessionView) -> FinalizeResult:
        finalize_total.labels(outcome="replayed").inc()
        return FinalizeResult(upload_id=view.upload_id, blob_handle=view.blob_handle, already_completed=True)

    def _reassemble(self, view: SessionView, indices: list[int]) -> tuple[str, int]:
        metadata = {
            "upload_id": view.upload_id,
            "original_name": view.original_name,
            "declared_size": view.declared_size,
            "mime_type": view.mime_type,
        }
        try:
            writer = self.blob_store.open_writer(view.stored_name, view.mime_type, metadata)
        except Exception as exc:
            finalize_total.labels(outcome="failed").inc()
            raise ReassemblyFailed(f"could not open blob writer: {exc}", upload_id=view.upload_id) from exc

        try:
            written = self.transfer(view.upload_id, indices, writer)
            handle = writer.commit()
        except Exception as exc:
            self._abort(writer, view.upload_id)
            finalize_total.labels(outcome="failed").inc()
            log_event(
                {
                    "event": "reassembly_failed",
                    "upload_id": view.upload_id,
                    "detail": str(exc),
                    "error_class": "reassembly_failed",
                },
                level=logging.ERROR,
            )
            if isinstance(exc, ReassemblyFailed):
                raise
            raise ReassemblyFailed(f"blob commit failed: {exc}", upload_id=view.upload_id) from exc
        return handle, written

    def transfer(self, upload_id: str, indices: list[int], writer: BlobWriter) -> int:
        channel = TransferChannel(self.channel_depth)
        reader = threading.Thread(
            target=self._pump_chunks,
            args=(upload_id, indices, channel),
            name=f"reassembly-{upload_id[:8]}",
            daemon=True,
        )
        reader.start()
        written = 0
        try:
            while True:
                item = channel.receive()
                if item is _END:
                    break
                if isinstance(item, _ReadFailure):
                    raise ReassemblyFailed(
                        f"failed to read chunk {item.index}: {item.error}",
                        upload_id=upload_id,
                        chunk_index=item.index,
                    ) from item.error
                try:
                    writer.write(item)
                except Exception as exc:
                    raise ReassemblyFailed(f"blob write failed: {exc}", upload_id=upload_id) from exc
                written += len(item)
        finally:
            channel.cancel()
            reader.join()
        return written

    def _pump_chunks(self, upload_id: str, indices: list[int], channel: TransferChannel) -> None:
        index = None
        try:
            for index in indices:
                with self.staging.open_chunk(upload_id, index) as fh:
                    while True:
                        piece = fh.read(self.piece_size)
                        if not piece:
                            break
                        if not channel.send(piece):
                            return
            channel.send(_END)
        except Exception as exc:
            channel.send(_ReadFailure(index=index, error=exc))

    def _abort(self, writer: BlobWriter, upload_id: str) -> None:
        try:
            writer.abort()
        except Exception as exc:
            log_event(
                {
                    "event": "blob_abort_failed",
                    "upload_id": upload_id,
                    "blob_handle": writer.handle,
                    "detail": str(exc),
                    "error_class": "storage_error",
                },
                level=logging.WARNING,
            )

    def _purge_staging(self, upload_id: str) -> None:
        try:
            self.staging.purge(upload_id)
        except OSError as exc:
            # The session is already COMPLETED; cleanup_once removes the directory later.
            log_event(
                {
                    "event": "staging_purge_failed",
                    "upload_id": upload_id,
                    "detail": str(exc),
                    "error_class": "storage_error",
                },
                level=logging.WARNING,
            )
