import json
from pathlib import Path

from fastapi.testclient import TestClient

from chunkstream.config import Settings
from chunkstream.db import Base, engine
from chunkstream.main import app, build_services


def _reset_state(tmp_path: Path, monkeypatch) -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(app.state, "services", build_services(Settings(storage_root=str(tmp_path))))


def _events_from_caplog(caplog) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        if record.name != "chunkstream.audit":
            continue
        try:
            events.append(json.loads(record.message))
        except json.JSONDecodeError:
            continue
    return events


def test_audit_logs_for_init_complete_stream_delete(caplog, tmp_path: Path, monkeypatch) -> None:
    _reset_state(tmp_path, monkeypatch)
    caplog.set_level("INFO", logger="chunkstream.audit")
    headers = {"X-Request-ID": "req-audit"}
    with TestClient(app) as client:
        init = client.post("/v1/uploads/init", json={"file_name": "audit.bin", "total_chunks": 1}, headers=headers)
        assert init.status_code == 201
        upload_id = init.json()["upload_id"]

        chunk = client.put(f"/v1/uploads/{upload_id}/chunks/0", content=b"abcd", headers=headers)
        assert chunk.status_code == 200

        complete = client.post(f"/v1/uploads/{upload_id}/complete", headers=headers)
        assert complete.status_code == 200

        stream = client.get(f"/v1/uploads/{upload_id}/content", headers={**headers, "Range": "bytes=0-1"})
        assert stream.status_code == 206

        deleted = client.delete(f"/v1/uploads/{upload_id}", headers=headers)
        assert deleted.status_code == 200

    events = _events_from_caplog(caplog)
    actions = [event.get("action") for event in events]
    assert actions == ["upload_init", "upload_complete", "stream", "upload_delete"]
    init_event = events[0]
    assert init_event["request_id"] == "req-audit"
    assert init_event["upload_id"] == upload_id
    assert init_event["total_chunks"] == 1
    assert "trace_id" in init_event
    stream_event = events[2]
    assert stream_event["status_code"] == 206
    assert stream_event["range_requested"] is True
    assert stream_event["blob_handle"] == complete.json()["blob_handle"]
