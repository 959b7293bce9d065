import io
from pathlib import Path

import pytest

from chunkstream.staging import ChunkStaging


def test_put_and_read_back_chunk(tmp_path: Path) -> None:
    staging = ChunkStaging(tmp_path / "staging")

    written = staging.put("u1", 3, b"payload")

    assert written == 7
    assert staging.chunk_path("u1", 3) == tmp_path / "staging" / "u1" / "3"
    with staging.open_chunk("u1", 3) as fh:
        assert fh.read() == b"payload"


def test_put_accepts_streams_and_iterables(tmp_path: Path) -> None:
    staging = ChunkStaging(tmp_path)

    assert staging.put("u1", 0, io.BytesIO(b"from-stream")) == 11
    assert staging.put("u1", 1, [b"ab", b"", b"cd"]) == 4
    with staging.open_chunk("u1", 1) as fh:
        assert fh.read() == b"abcd"


def test_retried_put_replaces_previous_bytes(tmp_path: Path) -> None:
    staging = ChunkStaging(tmp_path)
    staging.put("u1", 0, b"first attempt, longer")
    staging.put("u1", 0, b"second")

    with staging.open_chunk("u1", 0) as fh:
        assert fh.read() == b"second"
    assert sorted(p.name for p in staging.session_dir("u1").iterdir()) == ["0"]


def test_failed_put_leaves_no_partial_file(tmp_path: Path) -> None:
    staging = ChunkStaging(tmp_path)
    staging.put("u1", 0, b"good")

    def _broken():
        yield b"partial"
        raise OSError("client went away")

    with pytest.raises(OSError):
        staging.put("u1", 0, _broken())

    with staging.open_chunk("u1", 0) as fh:
        assert fh.read() == b"good"
    assert sorted(p.name for p in staging.session_dir("u1").iterdir()) == ["0"]


def test_list_indices_ignores_temp_and_foreign_files(tmp_path: Path) -> None:
    staging = ChunkStaging(tmp_path)
    for index in (2, 0, 10):
        staging.put("u1", index, b"x")
    session_dir = staging.session_dir("u1")
    (session_dir / ".4.abc.part").write_bytes(b"tmp")
    (session_dir / "notes.txt").write_bytes(b"x")
    (session_dir / "٣").write_bytes(b"x")
    (session_dir / "7").mkdir()

    assert staging.list_indices("u1") == {0, 2, 10}
    assert staging.list_indices("unknown") == set()


def test_list_sessions_and_purge(tmp_path: Path) -> None:
    staging = ChunkStaging(tmp_path)
    staging.put("b-session", 0, b"x")
    staging.put("a-session", 0, b"x")

    assert staging.list_sessions() == ["a-session", "b-session"]

    staging.purge("a-session")
    staging.purge("a-session")
    assert staging.list_sessions() == ["b-session"]
    assert staging.list_indices("a-session") == set()
