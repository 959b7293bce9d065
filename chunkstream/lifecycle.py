from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from chunkstream.blobstore import BlobLocator
from chunkstream.errors import BlobNotFound, NotFound
from chunkstream.events import log_event
from chunkstream.metrics import sessions_deleted_total
from chunkstream.models import utc_now
from chunkstream.sessions import SessionStore
from chunkstream.staging import ChunkStaging


@dataclass(frozen=True)
class DeleteOutcome:
    upload_id: str
    deleted: bool
    reason: str | None = None


@dataclass(frozen=True)
class BulkDeleteResult:
    results: list[DeleteOutcome]

    @property
    def deleted_count(self) -> int:
        return sum(1 for item in self.results if item.deleted)


class Lifecycle:
    def __init__(
        self,
        sessions: SessionStore,
        staging: ChunkStaging,
        blobs: BlobLocator,
        bulk_max: int = 200,
        stale_upload_ttl_seconds: int = 86400,
    ) -> None:
        self.sessions = sessions
        self.staging = staging
        self.blobs = blobs
        self.bulk_max = bulk_max
        self.stale_upload_ttl_seconds = stale_upload_ttl_seconds

    def delete_session(self, upload_id: str) -> None:
        """Remove the blob, the staging directory and the record, in that order.

        Raises ``NotFound`` when there is no record. A blob that is already gone
        is fine; any other storage error aborts before the record is touched so
        the deletion can be retried.
        """
        view = self.sessions.get(upload_id)
        located = self.blobs.locate(view)
        if located is not None:
            store, handle = located
            try:
                store.delete(handle)
            except BlobNotFound:
                pass
        self.staging.purge(upload_id)
        self.sessions.delete(upload_id)
        sessions_deleted_total.inc()

    def delete_many(self, upload_ids: list[str]) -> BulkDeleteResult:
        results: list[DeleteOutcome] = []
        seen: set[str] = set()
        for upload_id in upload_ids[: self.bulk_max]:
            if upload_id in seen:
                continue
            seen.add(upload_id)
            try:
                self.delete_session(upload_id)
            except NotFound:
                results.append(DeleteOutcome(upload_id=upload_id, deleted=False, reason="not found"))
            except Exception as exc:
                log_event(
                    {
                        "event": "session_delete_failed",
                        "upload_id": upload_id,
                        "detail": str(exc),
                        "error_class": "storage_error",
                    },
                    level=logging.ERROR,
                )
                results.append(DeleteOutcome(upload_id=upload_id, deleted=False, reason=str(exc)))
            else:
                results.append(DeleteOutcome(upload_id=upload_id, deleted=True))
        return BulkDeleteResult(results=results)

    def cleanup_once(self) -> dict[str, int]:
        stale_before = utc_now() - timedelta(seconds=self.stale_upload_ttl_seconds)

        stale_deleted = 0
        for view in self.sessions.list_stale(stale_before):
            try:
                self.delete_session(view.upload_id)
                stale_deleted += 1
            except NotFound:
                continue

        orphan_dirs_purged = 0
        for upload_id in self.staging.list_sessions():
            try:
                view = self.sessions.get(upload_id)
            except NotFound:
                view = None
            if view is None or view.is_completed:
                self.staging.purge(upload_id)
                orphan_dirs_purged += 1

        return {
            "stale_sessions_deleted": stale_deleted,
            "staging_dirs_purged": orphan_dirs_purged,
        }
