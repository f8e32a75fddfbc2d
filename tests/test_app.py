"""Integration tests for the host HTTP API."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from conftest import end_session, start_session
from cr_screen import app as app_module
from cr_screen.app import create_app
from cr_screen.event_log import EventLog
from cr_screen.handoff import SendFailed
from cr_screen.recording import Recording
from cr_screen.session import PAIRING_CODE_PLACEHOLDER
from cr_screen.settings import SHARED_STATE_DIR_ENV, UPLOAD_URL_ENV
from cr_screen.shared_state import SharedKey, SharedState


class _Consumer:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.received: list[Path] = []

    async def __call__(self, recording: Recording) -> bool:
        if self.fail:
            raise SendFailed("collector offline")
        self.received.append(recording.path)
        return True


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(SHARED_STATE_DIR_ENV, raising=False)
    monkeypatch.delenv(UPLOAD_URL_ENV, raising=False)


@pytest.fixture
def consumer() -> _Consumer:
    return _Consumer()


@pytest.fixture
def client(tmp_path: Path, memory_state: SharedState, consumer: _Consumer) -> TestClient:
    app = create_app(
        tmp_path / "settings.json",
        shared_state=memory_state,
        consumer=consumer,
        event_log=EventLog(None),
    )
    with TestClient(app) as test_client:
        yield test_client


def _publish_recording(state: SharedState, tmp_path: Path, size: int = 20_000) -> Path:
    path = tmp_path / "broadcast.mp4"
    path.write_bytes(b"\0" * size)
    state.set(SharedKey.LAST_RECORDING_PATH, str(path))
    return path


def test_session_idle_by_default(client: TestClient) -> None:
    response = client.get("/api/session")
    assert response.status_code == 200
    payload = response.json()
    assert payload["state"] == "idle"
    assert payload["active"] is False
    assert payload["elapsed"] == "00:00:00"
    assert payload["pairing_code"] == PAIRING_CODE_PLACEHOLDER


def test_prepare_issues_code_and_publishes_quality(client: TestClient, memory_state: SharedState) -> None:
    response = client.post("/api/session/prepare")
    assert response.status_code == 200
    payload = response.json()
    code = payload["pairing_code"]
    assert len(code) == 4 and code.isdigit()
    assert memory_state.pairing_code() == code
    assert memory_state.stream_quality() == "medium"


def test_issue_code_rejected_during_session(client: TestClient, memory_state: SharedState) -> None:
    start_session(memory_state, datetime.now(timezone.utc))

    response = client.post("/api/session/code")
    assert response.status_code == 409

    session = client.get("/api/session").json()
    assert session["state"] == "active"


def test_issue_code_when_idle(client: TestClient, memory_state: SharedState) -> None:
    response = client.post("/api/session/code")
    assert response.status_code == 200
    assert response.json()["code"] == memory_state.pairing_code()


def test_quality_round_trip(client: TestClient, memory_state: SharedState) -> None:
    initial = client.get("/api/session/quality").json()
    assert initial["quality"] == "medium"
    assert {option["id"] for option in initial["options"]} == {"low", "medium", "high"}

    response = client.post("/api/session/quality", json={"quality": "high"})
    assert response.status_code == 200
    assert response.json() == {"quality": "high"}
    assert memory_state.stream_quality() == "high"
    assert client.get("/api/session/quality").json()["quality"] == "high"


def test_quality_is_read_off_the_event_loop(
    client: TestClient, memory_state: SharedState, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []
    original = app_module.run_in_threadpool

    async def recording_threadpool(func, *args, **kwargs):
        calls.append(getattr(func, "__name__", repr(func)))
        return await original(func, *args, **kwargs)

    monkeypatch.setattr(app_module, "run_in_threadpool", recording_threadpool)
    memory_state.set(SharedKey.STREAM_QUALITY, "low")

    assert client.get("/api/session/quality").json()["quality"] == "low"
    assert "stream_quality" in calls


def test_quality_rejects_unknown_value(client: TestClient) -> None:
    response = client.post("/api/session/quality", json={"quality": "ultra"})
    assert response.status_code == 422


def test_recording_missing_pointer_returns_404(client: TestClient) -> None:
    assert client.get("/api/recording").status_code == 404


def test_recording_stale_pointer_returns_404(client: TestClient, memory_state: SharedState, tmp_path: Path) -> None:
    memory_state.set(SharedKey.LAST_RECORDING_PATH, str(tmp_path / "gone.mp4"))
    assert client.get("/api/recording").status_code == 404


def test_recording_too_small_returns_422(client: TestClient, memory_state: SharedState, tmp_path: Path) -> None:
    _publish_recording(memory_state, tmp_path, size=512)
    response = client.get("/api/recording")
    assert response.status_code == 422
    assert "512 bytes" in response.json()["detail"]


def test_recording_details(client: TestClient, memory_state: SharedState, tmp_path: Path) -> None:
    path = _publish_recording(memory_state, tmp_path)
    response = client.get("/api/recording")
    assert response.status_code == 200
    payload = response.json()
    assert payload["path"] == str(path)
    assert payload["size_bytes"] == 20_000


def test_delete_recording(client: TestClient, memory_state: SharedState, tmp_path: Path) -> None:
    path = _publish_recording(memory_state, tmp_path)

    response = client.delete("/api/recording")
    assert response.status_code == 200
    assert response.json()["deleted"] is True
    assert not path.exists()
    assert memory_state.last_recording_path() is None
    assert client.delete("/api/recording").status_code == 404


def test_send_recording(
    client: TestClient, memory_state: SharedState, consumer: _Consumer, tmp_path: Path
) -> None:
    path = _publish_recording(memory_state, tmp_path)

    response = client.post("/api/recording/send")
    assert response.status_code == 200
    assert response.json()["sent"] is True
    assert consumer.received == [path]
    assert memory_state.last_recording_path() is None


def test_send_failure_keeps_recording(
    client: TestClient, memory_state: SharedState, consumer: _Consumer, tmp_path: Path
) -> None:
    consumer.fail = True
    path = _publish_recording(memory_state, tmp_path)

    response = client.post("/api/recording/send")
    assert response.status_code == 502
    assert memory_state.last_recording_path() == str(path)
    assert path.exists()


def test_send_without_destination_returns_503(tmp_path: Path, memory_state: SharedState) -> None:
    _publish_recording(memory_state, tmp_path)
    app = create_app(tmp_path / "settings.json", shared_state=memory_state, event_log=EventLog(None))
    with TestClient(app) as client:
        assert client.post("/api/recording/send").status_code == 503


def test_events_endpoint_lists_activity(client: TestClient, memory_state: SharedState, tmp_path: Path) -> None:
    client.post("/api/session/code")
    _publish_recording(memory_state, tmp_path)
    client.delete("/api/recording")

    events = client.get("/api/events").json()["events"]
    names = [entry["event"] for entry in events]
    assert "startup" in names
    assert "pairing_code" in names
    assert "deleted" in names

    handoff = client.get("/api/events", params={"category": "handoff"}).json()["events"]
    assert handoff and all(entry["category"] == "handoff" for entry in handoff)


def test_session_end_is_reported_by_poller(tmp_path: Path, memory_state: SharedState) -> None:
    (tmp_path / "settings.json").write_text('{"poll_interval_s": 0.05}', encoding="utf-8")
    log = EventLog(None)
    app = create_app(tmp_path / "settings.json", shared_state=memory_state, event_log=log)
    with TestClient(app):
        start_session(memory_state, datetime.now(timezone.utc))
        _wait_for(lambda: any(entry.event == "session_started" for entry in log.tail()))
        end_session(memory_state)
        _wait_for(lambda: any(entry.event == "session_ended" for entry in log.tail()))


def _wait_for(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met in time")
