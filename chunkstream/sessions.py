from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath

from sqlalchemy import delete, exc as sa_exc, select, update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from chunkstream.errors import Conflict, InvalidArgument, NotFound
from chunkstream.models import ReceivedChunk, SessionStatus, UploadSession, utc_now

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_UNSAFE_CHARS = re.compile(r"[^\w.\- ]+")
_WHITESPACE = re.compile(r"\s+")


def sanitize_name(name: str, max_length: int = 200) -> str:
    """Reduce a client file name to a safe single path component.

    Returns an empty string when nothing usable is left.
    """
    base = PurePosixPath(str(name).replace("\\", "/")).name
    base = _CONTROL_CHARS.sub("", base)
    base = _UNSAFE_CHARS.sub("_", base)
    base = _WHITESPACE.sub(" ", base).strip().lstrip(".")
    return base[:max_length].strip()


@dataclass(frozen=True)
class SessionView:
    upload_id: str
    original_name: str
    stored_name: str
    blob_handle: str | None
    legacy_path: str | None
    declared_size: int | None
    mime_type: str | None
    total_chunks: int
    received_chunks: tuple[int, ...]
    status: str
    created_at: datetime
    updated_at: datetime

    @property
    def received_count(self) -> int:
        return len(self.received_chunks)

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.completed.value

    @property
    def progress(self) -> float:
        return round(self.received_count / self.total_chunks, 4) if self.total_chunks else 0.0

    def missing_indices(self) -> list[int]:
        received = set(self.received_chunks)
        return [idx for idx in range(self.total_chunks) if idx not in received]

    @classmethod
    def from_row(cls, row: UploadSession) -> "SessionView":
        return cls(
            upload_id=row.id,
            original_name=row.original_name,
            stored_name=row.stored_name,
            blob_handle=row.blob_handle,
            legacy_path=row.legacy_path,
            declared_size=row.declared_size,
            mime_type=row.mime_type,
            total_chunks=row.total_chunks,
            received_chunks=tuple(sorted(chunk.chunk_index for chunk in row.received_chunks)),
            status=row.status,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class SessionStore:
    """Durable upload progress records. Holds no chunk bytes."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_name_length: int = 200,
        default_limit: int = 50,
        max_limit: int = 200,
    ) -> None:
        self._session_factory = session_factory
        self.max_name_length = max_name_length
        self.default_limit = default_limit
        self.max_limit = max_limit

    def create(
        self,
        original_name: str,
        total_chunks: int,
        declared_size: int | None = None,
        mime_type: str | None = None,
    ) -> SessionView:
        if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) or total_chunks <= 0:
            raise InvalidArgument("total_chunks must be a positive integer", total_chunks=total_chunks)
        safe_name = sanitize_name(original_name or "", self.max_name_length)
        if not safe_name:
            raise InvalidArgument("file name is empty after sanitization")

        upload_id = str(uuid.uuid4())
        row = UploadSession(
            id=upload_id,
            original_name=str(original_name).strip(),
            stored_name=f"{upload_id}-{safe_name}",
            declared_size=declared_size,
            mime_type=mime_type or None,
            total_chunks=total_chunks,
            status=SessionStatus.uploading.value,
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            return self._load(db, upload_id)

    def record_chunk_received(self, upload_id: str, index: int) -> None:
        """Record a staged chunk index.

        Raises ``Conflict`` once the session is COMPLETED. The status check is a
        conditional update in the same transaction as the insert, so a finalize
        that commits first always wins.
        """
        with self._session_factory() as db:
            row = db.get(UploadSession, upload_id, with_for_update=True)
            if row is None:
                raise NotFound("upload session not found", upload_id=upload_id)
            if row.status != SessionStatus.uploading.value:
                raise Conflict("upload is not accepting chunks", upload_id=upload_id, status=row.status)
            if index < 0 or index >= row.total_chunks:
                raise InvalidArgument(
                    "chunk index out of bounds", chunk_index=index, total_chunks=row.total_chunks
                )
            exists = db.scalar(
                select(ReceivedChunk.id).where(ReceivedChunk.upload_id == upload_id, ReceivedChunk.chunk_index == index)
            )
            if exists is None:
                db.add(ReceivedChunk(upload_id=upload_id, chunk_index=index))
                try:
                    db.flush()
                except sa_exc.IntegrityError:
                    # A concurrent request recorded the same index first.
                    db.rollback()
                    return
            result = db.execute(
                update(UploadSession)
                .where(UploadSession.id == upload_id, UploadSession.status == SessionStatus.uploading.value)
                .values(updated_at=utc_now())
            )
            if result.rowcount == 0:
                db.rollback()
                raise Conflict(
                    "upload is not accepting chunks", upload_id=upload_id, status=SessionStatus.completed.value
                )
            db.commit()

    def get(self, upload_id: str) -> SessionView:
        with self._session_factory() as db:
            return self._load(db, upload_id)

    def list(self, limit: int | None = None) -> list[SessionView]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(UploadSession)
                .options(selectinload(UploadSession.received_chunks))
                .order_by(UploadSession.created_at.desc(), UploadSession.id)
                .limit(self.clamp_limit(limit))
            ).all()
            return [SessionView.from_row(row) for row in rows]

    def list_stale(self, older_than: datetime) -> list[SessionView]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(UploadSession)
                .options(selectinload(UploadSession.received_chunks))
                .where(UploadSession.status == SessionStatus.uploading.value, UploadSession.created_at < older_than)
            ).all()
            return [SessionView.from_row(row) for row in rows]

    def mark_completed(self, upload_id: str, blob_handle: str) -> SessionView:
        with self._session_factory() as db:
            result = db.execute(
                update(UploadSession)
                .where(UploadSession.id == upload_id, UploadSession.status == SessionStatus.uploading.value)
                .values(status=SessionStatus.completed.value, blob_handle=blob_handle, updated_at=utc_now())
            )
            db.commit()
            if result.rowcount == 0:
                current = db.get(UploadSession, upload_id)
                if current is None:
                    raise NotFound("upload session not found", upload_id=upload_id)
                raise Conflict(
                    "upload session already completed", upload_id=upload_id, blob_handle=current.blob_handle
                )
            return self._load(db, upload_id)

    def delete(self, upload_id: str) -> bool:
        with self._session_factory() as db:
            db.execute(delete(ReceivedChunk).where(ReceivedChunk.upload_id == upload_id))
            result = db.execute(delete(UploadSession).where(UploadSession.id == upload_id))
            db.commit()
            return bool(result.rowcount)

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None or limit <= 0:
            return self.default_limit
        return min(self.max_limit, limit)

    def _load(self, db: Session, upload_id: str) -> SessionView:
        row = db.scalar(
            select(UploadSession)
            .options(selectinload(UploadSession.received_chunks))
            .where(UploadSession.id == upload_id)
            .execution_options(populate_existing=True)
        )
        if row is None:
            raise NotFound("upload session not found", upload_id=upload_id)
        return SessionView.from_row(row)
