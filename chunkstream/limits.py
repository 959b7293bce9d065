from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock

from fastapi import HTTPException

from chunkstream.metrics import throttled_requests_total
from chunkstream.worker import THROTTLE_HEADERS_BASE


class PerUploadInflightLimiter:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._counts: dict[str, int] = {}
        self._lock = Lock()

    def acquire(self, upload_id: str) -> None:
        with self._lock:
            current = self._counts.get(upload_id, 0)
            if current >= self.limit:
                throttled_requests_total.inc()
                raise HTTPException(
                    status_code=429,
                    detail="per-upload inflight chunk limit reached",
                    headers={**THROTTLE_HEADERS_BASE, "X-RateLimit-Reason": "upload_inflight_limit"},
                )
            self._counts[upload_id] = current + 1

    def release(self, upload_id: str) -> None:
        with self._lock:
            current = self._counts.get(upload_id, 0)
            next_value = max(0, current - 1)
            if next_value == 0:
                self._counts.pop(upload_id, None)
            else:
                self._counts[upload_id] = next_value


class SessionLocks:
    """One mutex per upload id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[Lock, int]] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, upload_id: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(upload_id, (None, 0))
            if lock is None:
                lock = Lock()
            self._locks[upload_id] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[upload_id]
                if users <= 1:
                    self._locks.pop(upload_id, None)
                else:
                    self._locks[upload_id] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
