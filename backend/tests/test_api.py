import json

import pytest
from sqlalchemy.exc import OperationalError

from conftest import OTHER_OWNER, OWNER, FakeRedis, v2_envelope, v2_record
from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.services.progress_snapshots import ProgressSnapshotStore
from recordkeeper.services.record_store import RecordStore


def _records(count: int, prefix: str = "record") -> list[dict]:
    return [v2_record(f"{prefix} {i}") for i in range(count)]


def _events(response) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]


@pytest.fixture
def paused_session(client, settings, monkeypatch):
    """Import six records in chunks of two with the second chunk commit failing."""
    settings.import_chunk_size = 2
    original = RecordStore.commit
    calls = {"count": 0}

    def flaky_commit(self):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("COMMIT", {}, Exception("server closed the connection unexpectedly"))
        original(self)

    monkeypatch.setattr(RecordStore, "commit", flaky_commit)
    response = client.post("/api/import", json=v2_envelope(_records(6)))
    monkeypatch.setattr(RecordStore, "commit", original)
    return response


def test_requests_without_owner_are_rejected(client):
    response = client.get("/api/export", headers={"X-Owner-Id": ""})

    assert response.status_code == 401
    assert response.json()["detail"] == {"error": "Unauthorized"}


def test_import_two_records(client):
    response = client.post("/api/import", json=v2_envelope([v2_record("first note"), v2_record("second note")]))

    assert response.status_code == 200
    assert response.json() == {"imported": 2, "skipped": 0, "errors": []}


def test_import_empty_list(client):
    response = client.post("/api/import", json=v2_envelope([]))

    assert response.status_code == 200
    assert response.json() == {"imported": 0, "skipped": 0, "errors": []}


def test_reimport_is_skipped_as_duplicate(client):
    client.post("/api/import", json=v2_envelope([v2_record("duplicate test record")]))

    response = client.post("/api/import", json=v2_envelope([v2_record("Record DUPLICATE test")]))

    assert response.json() == {"imported": 0, "skipped": 1, "errors": []}
    assert len(client.get("/api/export").json()["records"]) == 1


def test_oversized_record_rejects_whole_payload(client):
    records = _records(1001)
    records[500]["content"] = "a" * 20001

    response = client.post("/api/import", json=v2_envelope(records))

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["field"] == "records.500.content"
    assert "length" in detail["message"]
    assert client.get("/api/export").json()["records"] == []


@pytest.mark.parametrize(
    "payload,field",
    [
        ([1, 2], "root"),
        ({"records": []}, "version"),
        ({"version": "3.0", "records": []}, "version"),
        (v2_envelope([v2_record("x", created_at="yesterday", updated_at="now")]), "records.0.createdAt"),
        (v2_envelope([v2_record("")]), "records.0.content"),
    ],
)
def test_structural_errors_are_400(client, payload, field):
    response = client.post("/api/import", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == field


def test_malformed_json_is_400(client):
    response = client.post(
        "/api/import",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MALFORMED_PAYLOAD"


def test_record_limit_is_enforced(client, settings):
    settings.import_max_records = 3

    response = client.post("/api/import", json=v2_envelope(_records(4)))

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "TOO_MANY_RECORDS"
    assert detail["error"] == "Import exceeds limit: 4 records (max: 3)"
    assert detail["repairSuggestions"][0]["type"] == "split_batch"


def test_background_import_streams_progress(client):
    accepted = client.post("/api/import", params={"progress": "true"}, json=v2_envelope(_records(3)))

    assert accepted.status_code == 202
    body = accepted.json()
    assert body["progressUrl"] == f"/api/import/progress/{body['progressChannelId']}"

    stream = client.get(body["progressUrl"])
    events = _events(stream)

    assert events[0]["status"] == "started"
    assert events[-1]["status"] == "completed"
    assert events[-1]["imported"] == 3
    assert events[-1]["percentage"] == 100
    assert [e["processed"] for e in events] == sorted(e["processed"] for e in events)

    latest = client.get(f"{body['progressUrl']}/latest")
    assert latest.status_code == 200
    assert latest.json()["status"] == "completed"

    session = client.get(f"/api/import/sessions/{body['sessionId']}")
    assert session.json()["status"] == "completed"


def test_progress_channels_are_owner_scoped(client):
    body = client.post("/api/import", params={"progress": "true"}, json=v2_envelope(_records(1))).json()

    forbidden = client.get(body["progressUrl"], headers={"X-Owner-Id": OTHER_OWNER})
    missing = client.get("/api/import/progress/progress-missing")

    assert forbidden.status_code == 403
    assert missing.status_code == 404
    assert client.get("/api/import/progress/progress-missing/latest").status_code == 404


def test_latest_falls_back_to_snapshot(client, publisher):
    publisher.snapshot_store = ProgressSnapshotStore(FakeRedis())
    channel_id = publisher.create_channel(OWNER)
    publisher.publish(channel_id, ProgressUpdate(status="processing", processed=1, total=4))
    publisher.remove(channel_id)

    mine = client.get(f"/api/import/progress/{channel_id}/latest")
    theirs = client.get(f"/api/import/progress/{channel_id}/latest", headers={"X-Owner-Id": OTHER_OWNER})

    assert mine.status_code == 200
    assert mine.json()["percentage"] == 25
    assert "ownerId" not in mine.json()
    assert theirs.status_code == 404


def test_session_status(client):
    body = client.post("/api/import", params={"progress": "true"}, json=v2_envelope([v2_record("only note")])).json()

    response = client.get(f"/api/import/sessions/{body['sessionId']}")
    other = client.get(f"/api/import/sessions/{body['sessionId']}", headers={"X-Owner-Id": OTHER_OWNER})

    assert response.status_code == 200
    session = response.json()
    assert session["importedRecords"] == 1
    assert session["lastProcessedIndex"] == 0
    assert session["canResume"] is False
    assert session["errorSummary"]["totalErrors"] == 0
    assert other.status_code == 404


def test_failed_chunk_returns_recovery_details(paused_session):
    assert paused_session.status_code == 422
    detail = paused_session.json()["detail"]

    assert detail["success"] is False
    assert detail["canResume"] is True
    assert detail["resumeInfo"]["lastProcessedIndex"] == 1
    assert detail["resumeInfo"]["remainingRecords"] == 4
    assert detail["errors"][-1]["errorCode"] == "CHUNK_FAILED"
    assert [s["type"] for s in detail["repairSuggestions"]] == ["retry"]
    assert detail["errorSummary"]["successfulRecords"] == 2


def test_resume_flow(client, paused_session):
    session_id = paused_session.json()["detail"]["sessionId"]
    resume_url = f"/api/import/sessions/{session_id}/resume"

    needs_records = client.post(resume_url)
    assert needs_records.status_code == 200
    assert needs_records.json()["requiresRecords"] is True
    assert needs_records.json()["resumed"] is False

    wrong_count = client.post(resume_url, json={"records": _records(2)})
    assert wrong_count.status_code == 400
    assert wrong_count.json()["detail"]["field"] == "records"

    tail = _records(6)[2:]
    resumed = client.post(resume_url, json={"records": tail})
    assert resumed.status_code == 200
    body = resumed.json()
    assert body["resumed"] is True
    assert body["status"] == "completed"
    assert body["result"] == {"imported": 6, "skipped": 0, "errors": []}

    again = client.post(resume_url, json={"records": tail})
    assert again.status_code == 400
    assert again.json()["detail"] == {"error": "Session cannot be resumed"}

    assert len(client.get("/api/export").json()["records"]) == 6


def test_resume_from_retained_payload(client, settings, monkeypatch):
    settings.retain_import_payload = True
    settings.import_chunk_size = 2
    original = RecordStore.commit
    calls = {"count": 0}

    def flaky_commit(self):
        calls["count"] += 1
        if calls["count"] == 3:
            raise OperationalError("COMMIT", {}, Exception("server closed the connection unexpectedly"))
        original(self)

    monkeypatch.setattr(RecordStore, "commit", flaky_commit)
    paused = client.post("/api/import", json=v2_envelope(_records(5)))
    monkeypatch.setattr(RecordStore, "commit", original)
    session_id = paused.json()["detail"]["sessionId"]

    accepted = client.post(f"/api/import/sessions/{session_id}/resume", params={"progress": "true"})

    assert accepted.status_code == 202
    events = _events(client.get(accepted.json()["progressUrl"]))
    assert events[-1]["status"] == "completed"
    assert events[-1]["imported"] == 5


def test_resume_unknown_session_is_404(client):
    assert client.post("/api/import/sessions/import-0-missing/resume").status_code == 404


def test_cancel_paused_session(client, paused_session):
    session_id = paused_session.json()["detail"]["sessionId"]

    cancelled = client.post(f"/api/import/sessions/{session_id}/cancel")
    again = client.post(f"/api/import/sessions/{session_id}/cancel")

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["canResume"] is False
    assert again.status_code == 409
    assert client.post(f"/api/import/sessions/{session_id}/resume").status_code == 400
