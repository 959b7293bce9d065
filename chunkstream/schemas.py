from datetime import datetime

from pydantic import BaseModel, Field


class InitUploadRequest(BaseModel):
    file_name: str = Field(min_length=1)
    total_chunks: int = Field(gt=0)
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = Field(default=None, max_length=255)


class InitUploadResponse(BaseModel):
    upload_id: str
    stored_name: str
    total_chunks: int
    status: str


class UploadChunkResponse(BaseModel):
    upload_id: str
    chunk_index: int
    received_count: int
    total_chunks: int


class CompleteUploadResponse(BaseModel):
    upload_id: str
    status: str
    blob_handle: str | None = None
    playback_url: str
    already_completed: bool


class SessionResponse(BaseModel):
    upload_id: str
    original_name: str
    stored_name: str
    blob_handle: str | None
    file_size: int | None
    mime_type: str | None
    total_chunks: int
    received_chunks: list[int]
    received_count: int
    progress: float
    status: str
    created_at: datetime
    updated_at: datetime
    playback_url: str


class SessionListResponse(BaseModel):
    items: list[SessionResponse]


class MissingChunksResponse(BaseModel):
    upload_id: str
    missing_chunk_indexes: list[int]
    status: str


class DeleteUploadResponse(BaseModel):
    ok: bool
    upload_id: str


class BulkDeleteRequest(BaseModel):
    upload_ids: list[str] = Field(min_length=1)


class DeleteOutcomeResponse(BaseModel):
    upload_id: str
    deleted: bool
    reason: str | None = None


class BulkDeleteResponse(BaseModel):
    ok: bool
    deleted_count: int
    results: list[DeleteOutcomeResponse]


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    retry: str | None = None
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None
    context: dict | None = None
