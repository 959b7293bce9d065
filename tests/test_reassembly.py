import itertools
import threading
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chunkstream.blobstore import LocalBlobStore
from chunkstream.db import Base
from chunkstream.errors import Conflict, IncompleteUpload, IntegrityError, NotFound, ReassemblyFailed
from chunkstream.limits import SessionLocks
from chunkstream.reassembly import Reassembler, TransferChannel
from chunkstream.sessions import SessionStore
from chunkstream.staging import ChunkStaging


class _SpyStore(LocalBlobStore):
    def __init__(self, root: Path, fail_write_after: int | None = None) -> None:
        super().__init__(root)
        self.writers_opened = 0
        self.aborted = 0
        self.fail_write_after = fail_write_after
        self._lock = threading.Lock()

    def open_writer(self, name, content_type, metadata):
        with self._lock:
            self.writers_opened += 1
        writer = super().open_writer(name, content_type, metadata)
        spy = self
        original_write = writer.write
        original_abort = writer.abort
        writes = itertools.count()

        def write(data: bytes) -> None:
            if spy.fail_write_after is not None and next(writes) >= spy.fail_write_after:
                raise OSError("disk full")
            original_write(data)

        def abort() -> None:
            spy.aborted += 1
            original_abort()

        writer.write = write
        writer.abort = abort
        return writer


def _setup(tmp_path: Path, piece_size: int = 4, channel_depth: int = 2, store: LocalBlobStore | None = None):
    engine = create_engine(f"sqlite:///{tmp_path / 'sessions.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    sessions = SessionStore(sessionmaker(bind=engine, autoflush=False))
    staging = ChunkStaging(tmp_path / "staging")
    blob_store = store or _SpyStore(tmp_path / "blobs")
    reassembler = Reassembler(
        sessions,
        staging,
        blob_store,
        locks=SessionLocks(),
        piece_size=piece_size,
        channel_depth=channel_depth,
    )
    return sessions, staging, blob_store, reassembler


def _receive(sessions: SessionStore, staging: ChunkStaging, upload_id: str, index: int, data: bytes) -> None:
    staging.put(upload_id, index, data)
    sessions.record_chunk_received(upload_id, index)


CHUNKS = [b"alpha-", b"bravo-", b"charlie-", b"delta"]


@pytest.mark.parametrize("arrival", [(0, 1, 2, 3), (3, 2, 1, 0), (2, 0, 3, 1)])
def test_blob_is_index_ordered_regardless_of_arrival(tmp_path: Path, arrival: tuple[int, ...]) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("phonetic.txt", len(CHUNKS), mime_type="text/plain")
    for index in arrival:
        _receive(sessions, staging, view.upload_id, index, CHUNKS[index])

    result = reassembler.finalize(view.upload_id)

    assert result.already_completed is False
    assert result.bytes_written == len(b"".join(CHUNKS))
    assert b"".join(store.open_reader(result.blob_handle)) == b"".join(CHUNKS)
    stat = store.stat(result.blob_handle)
    assert stat.name == view.stored_name
    assert stat.content_type == "text/plain"
    assert stat.metadata["upload_id"] == view.upload_id

    current = sessions.get(view.upload_id)
    assert current.is_completed
    assert current.blob_handle == result.blob_handle
    assert staging.list_indices(view.upload_id) == set()
    assert not staging.session_dir(view.upload_id).exists()


def test_finalize_twice_writes_one_blob(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 1)
    _receive(sessions, staging, view.upload_id, 0, b"only")

    first = reassembler.finalize(view.upload_id)
    second = reassembler.finalize(view.upload_id)

    assert second.already_completed is True
    assert second.blob_handle == first.blob_handle
    assert store.writers_opened == 1


def test_finalize_reports_received_count_when_chunks_missing(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 3)
    _receive(sessions, staging, view.upload_id, 0, b"a")
    _receive(sessions, staging, view.upload_id, 1, b"b")

    with pytest.raises(IncompleteUpload) as exc_info:
        reassembler.finalize(view.upload_id)

    assert exc_info.value.context["received"] == 2
    assert exc_info.value.context["expected"] == 3
    assert exc_info.value.context["missing_index"] == 2
    assert exc_info.value.retry == "later"
    assert store.writers_opened == 0
    assert not sessions.get(view.upload_id).is_completed


def test_finalize_names_missing_middle_index(tmp_path: Path) -> None:
    sessions, staging, _, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 4)
    for index in (0, 1, 3):
        _receive(sessions, staging, view.upload_id, index, b"x")

    with pytest.raises(IncompleteUpload) as exc_info:
        reassembler.finalize(view.upload_id)

    assert exc_info.value.context["received"] == 3
    assert exc_info.value.context["missing_index"] == 2


def test_finalize_rejects_staged_chunk_nobody_recorded(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 2)
    _receive(sessions, staging, view.upload_id, 0, b"a")
    staging.put(view.upload_id, 1, b"b")

    with pytest.raises(IntegrityError) as exc_info:
        reassembler.finalize(view.upload_id)

    assert exc_info.value.context["unrecorded_indices"] == [1]
    assert exc_info.value.context["unstaged_indices"] == []
    assert store.writers_opened == 0


def test_write_failure_aborts_blob_and_keeps_session_uploading(tmp_path: Path) -> None:
    store = _SpyStore(tmp_path / "blobs", fail_write_after=1)
    sessions, staging, _, reassembler = _setup(tmp_path, store=store)
    view = sessions.create("a.bin", 2)
    _receive(sessions, staging, view.upload_id, 0, b"abcdefgh")
    _receive(sessions, staging, view.upload_id, 1, b"ijkl")

    with pytest.raises(ReassemblyFailed) as exc_info:
        reassembler.finalize(view.upload_id)

    assert exc_info.value.retry == "now"
    assert store.aborted == 1
    assert list(store.incoming_dir.iterdir()) == []
    current = sessions.get(view.upload_id)
    assert not current.is_completed
    assert current.blob_handle is None
    assert staging.list_indices(view.upload_id) == {0, 1}

    store.fail_write_after = None
    result = reassembler.finalize(view.upload_id)
    assert b"".join(store.open_reader(result.blob_handle)) == b"abcdefghijkl"


def test_read_failure_mid_transfer_aborts(tmp_path: Path, monkeypatch) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 2)
    _receive(sessions, staging, view.upload_id, 0, b"abcd")
    _receive(sessions, staging, view.upload_id, 1, b"efgh")

    original_open = staging.open_chunk

    def flaky_open(upload_id: str, index: int):
        if index == 1:
            raise OSError("chunk vanished")
        return original_open(upload_id, index)

    monkeypatch.setattr(staging, "open_chunk", flaky_open)

    with pytest.raises(ReassemblyFailed) as exc_info:
        reassembler.finalize(view.upload_id)

    assert exc_info.value.context["chunk_index"] == 1
    assert store.aborted == 1
    assert not sessions.get(view.upload_id).is_completed


def test_finalize_unknown_session(tmp_path: Path) -> None:
    _, _, _, reassembler = _setup(tmp_path)
    with pytest.raises(NotFound):
        reassembler.finalize("missing")


def test_concurrent_finalize_commits_exactly_one_blob(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 3)
    for index in range(3):
        _receive(sessions, staging, view.upload_id, index, bytes([65 + index]) * 10)

    results = []
    errors = []
    barrier = threading.Barrier(4)

    def _run() -> None:
        barrier.wait()
        try:
            results.append(reassembler.finalize(view.upload_id))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len({r.blob_handle for r in results}) == 1
    assert sum(1 for r in results if not r.already_completed) == 1
    assert store.writers_opened == 1
    assert b"".join(store.open_reader(results[0].blob_handle)) == b"A" * 10 + b"B" * 10 + b"C" * 10


def test_lost_completion_race_discards_own_blob(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 1)
    _receive(sessions, staging, view.upload_id, 0, b"data")
    winner = "e" * 32

    original_mark = sessions.mark_completed

    def racing_mark(upload_id: str, blob_handle: str):
        original_mark(upload_id, winner)
        return original_mark(upload_id, blob_handle)

    sessions.mark_completed = racing_mark
    result = reassembler.finalize(view.upload_id)

    assert result.already_completed is True
    assert result.blob_handle == winner
    assert [p for p in store.root.rglob("*") if p.is_file()] == []


def test_transfer_channel_stays_within_depth(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path, piece_size=2, channel_depth=3)
    view = sessions.create("a.bin", 5)
    for index in range(5):
        _receive(sessions, staging, view.upload_id, index, b"0123456789")

    channels: list[TransferChannel] = []
    original_init = TransferChannel.__init__

    def tracking_init(self, depth: int) -> None:
        original_init(self, depth)
        channels.append(self)

    TransferChannel.__init__ = tracking_init
    try:
        result = reassembler.finalize(view.upload_id)
    finally:
        TransferChannel.__init__ = original_init

    assert result.bytes_written == 50
    assert len(channels) == 1
    assert 1 <= channels[0].high_water <= 3


def test_transfer_channel_send_gives_up_after_cancel() -> None:
    channel = TransferChannel(1)
    assert channel.send(b"a") is True

    channel.cancel()

    assert channel.cancelled
    assert channel.send(b"b", poll_seconds=0.01) is False
    assert channel.receive() == b"a"


def test_chunk_landing_after_finalize_is_refused(tmp_path: Path) -> None:
    sessions, staging, store, reassembler = _setup(tmp_path)
    view = sessions.create("a.bin", 2)
    _receive(sessions, staging, view.upload_id, 0, b"ab")
    _receive(sessions, staging, view.upload_id, 1, b"cd")
    result = reassembler.finalize(view.upload_id)

    staging.put(view.upload_id, 1, b"late")
    with pytest.raises(Conflict):
        sessions.record_chunk_received(view.upload_id, 1)
    staging.purge(view.upload_id)

    current = sessions.get(view.upload_id)
    assert current.is_completed
    assert current.received_chunks == (0, 1)
    assert staging.list_indices(view.upload_id) == set()
    assert b"".join(store.open_reader(result.blob_handle)) == b"abcd"
