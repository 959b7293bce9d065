import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chunkstream.db import Base


class SessionStatus(str, enum.Enum):
    uploading = "UPLOADING"
    completed = "COMPLETED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (Index("idx_upload_sessions_created_at", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    stored_name: Mapped[str] = mapped_column(Text, nullable=False)
    blob_handle: Mapped[str | None] = mapped_column(String(64), nullable=True)
    legacy_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    declared_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SessionStatus.uploading.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    received_chunks: Mapped[list["ReceivedChunk"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", order_by="ReceivedChunk.chunk_index"
    )


class ReceivedChunk(Base):
    __tablename__ = "received_chunks"
    __table_args__ = (UniqueConstraint("upload_id", "chunk_index", name="uq_received_chunk_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upload_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    session: Mapped[UploadSession] = relationship(back_populates="received_chunks")
