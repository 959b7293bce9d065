"""Error taxonomy shared by the session store, reassembly and streaming layers.

Every error carries the HTTP status it maps to, a stable ``error_code`` and a
``retry`` hint the client can act on:

* ``never``: the request is permanently invalid, do not resend it unchanged.
* ``later``: the upload is not ready yet, retry once more chunks arrive.
* ``now``: a transient failure, the same request is safe to resend as-is.
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    status_code = 500
    error_code = "internal_error"
    retry = "now"

    def __init__(self, detail: str, *, headers: dict[str, str] | None = None, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.headers = headers or {}
        self.context = context


class InvalidArgument(ServiceError):
    status_code = 400
    error_code = "invalid_argument"
    retry = "never"


class UnknownUploadSession(InvalidArgument):
    """Chunk sent for a session that does not exist; a bad request rather than a missing resource."""

    error_code = "not_found"


class NotFound(ServiceError):
    status_code = 404
    error_code = "not_found"
    retry = "never"


class BlobNotFound(NotFound):
    pass


class Conflict(ServiceError):
    status_code = 409
    error_code = "conflict"
    retry = "never"


class IncompleteUpload(ServiceError):
    status_code = 409
    error_code = "incomplete_upload"
    retry = "later"


class RangeNotSatisfiable(ServiceError):
    status_code = 416
    error_code = "range_not_satisfiable"
    retry = "never"

    def __init__(self, detail: str, total_size: int) -> None:
        super().__init__(detail, headers={"Content-Range": f"bytes */{total_size}"}, total_size=total_size)


class ReassemblyFailed(ServiceError):
    status_code = 500
    error_code = "reassembly_failed"
    retry = "now"


class IntegrityError(ServiceError):
    """Staged chunk files disagree with the indices the session store recorded."""

    status_code = 500
    error_code = "integrity_error"
    retry = "never"
