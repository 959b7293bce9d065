import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

from fastapi.responses import StreamingResponse

from chunkstream.blobstore import BlobStore
from chunkstream.errors import RangeNotSatisfiable
from chunkstream.events import log_event
from chunkstream.metrics import range_requests_total, streamed_bytes_total

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_RANGE_PATTERN = re.compile(r"^bytes=([0-9]+)-([0-9]*)$")
_HEADER_UNSAFE = re.compile(r'["\r\n]')


@dataclass(frozen=True)
class ByteSpan:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def parse_range(range_header: str, total_size: int) -> ByteSpan:
    """Parse a single ``bytes=<start>-[<end>]`` range against a known size.

    Multi-range, suffix ranges and anything malformed are rejected rather than
    falling back to a full response.
    """
    match = _RANGE_PATTERN.fullmatch(range_header)
    if not match:
        raise RangeNotSatisfiable("unsupported range header", total_size)
    start = int(match.group(1))
    if start >= total_size:
        raise RangeNotSatisfiable("range start beyond end of blob", total_size)
    end = int(match.group(2)) if match.group(2) else total_size - 1
    end = min(end, total_size - 1)
    if end < start:
        raise RangeNotSatisfiable("range end before range start", total_size)
    return ByteSpan(start=start, end=end)


def safe_filename(name: str) -> str:
    return _HEADER_UNSAFE.sub("", name)


def _tracked(body: Iterator[bytes], handle: str) -> Iterator[bytes]:
    sent = 0
    try:
        for piece in body:
            sent += len(piece)
            yield piece
    except Exception as exc:
        # Headers are already on the wire; re-raising drops the connection mid-body.
        log_event(
            {
                "event": "stream_aborted",
                "blob_handle": handle,
                "bytes_sent": sent,
                "detail": str(exc),
                "error_class": "storage_error",
            },
            level=logging.ERROR,
        )
        raise
    finally:
        streamed_bytes_total.inc(sent)


def stream_blob(store: BlobStore, handle: str, range_header: str | None = None) -> StreamingResponse:
    stat = store.stat(handle)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Disposition": f'inline; filename="{safe_filename(stat.name)}"',
    }
    media_type = stat.content_type or DEFAULT_CONTENT_TYPE

    if range_header and stat.total_size is not None:
        try:
            span = parse_range(range_header, stat.total_size)
        except RangeNotSatisfiable:
            range_requests_total.labels(status_code="416").inc()
            raise
        headers["Content-Range"] = f"bytes {span.start}-{span.end}/{stat.total_size}"
        headers["Content-Length"] = str(span.length)
        range_requests_total.labels(status_code="206").inc()
        return StreamingResponse(
            _tracked(store.open_reader(handle, (span.start, span.end)), handle),
            status_code=206,
            media_type=media_type,
            headers=headers,
        )

    if stat.total_size is not None:
        headers["Content-Length"] = str(stat.total_size)
    range_requests_total.labels(status_code="200").inc()
    return StreamingResponse(_tracked(store.open_reader(handle), handle), media_type=media_type, headers=headers)
