import os
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

ChunkSource = bytes | bytearray | memoryview | BinaryIO | Iterable[bytes]

COPY_PIECE_BYTES = 1024 * 1024


class ChunkStaging:
    """Per-session directory of chunk files named by their index.

    Chunks are written to a private temp file and renamed into place, so a
    reader only ever sees a complete chunk and a retried put either replaces
    the previous bytes entirely or leaves them untouched.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, upload_id: str) -> Path:
        return self.root / upload_id

    def chunk_path(self, upload_id: str, index: int) -> Path:
        return self.session_dir(upload_id) / str(index)

    def put(self, upload_id: str, index: int, source: ChunkSource) -> int:
        target_dir = self.session_dir(upload_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{index}.", suffix=".part", dir=target_dir)
        written = 0
        try:
            with os.fdopen(fd, "wb") as fh:
                for piece in _iter_source(source):
                    fh.write(piece)
                    written += len(piece)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.chunk_path(upload_id, index))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return written

    def open_chunk(self, upload_id: str, index: int) -> BinaryIO:
        return open(self.chunk_path(upload_id, index), "rb")

    def list_indices(self, upload_id: str) -> set[int]:
        target_dir = self.session_dir(upload_id)
        if not target_dir.is_dir():
            return set()
        return {
            int(entry.name)
            for entry in target_dir.iterdir()
            if entry.name.isascii() and entry.name.isdigit() and entry.is_file()
        }

    def list_sessions(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())

    def purge(self, upload_id: str) -> None:
        target_dir = self.session_dir(upload_id)
        try:
            shutil.rmtree(target_dir)
        except FileNotFoundError:
            pass


def _iter_source(source: ChunkSource) -> Iterable[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
        return
    read = getattr(source, "read", None)
    if read is not None:
        while True:
            piece = read(COPY_PIECE_BYTES)
            if not piece:
                break
            yield piece
        return
    for piece in source:
        if piece:
            yield piece
