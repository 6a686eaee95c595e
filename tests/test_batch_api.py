"""Tests for the batch upload API."""

import json
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from receipt_batch.adapters.simulated_processor import SimulatedRemoteProcessor
from receipt_batch.api.batch_routers import batch_status_stream
from receipt_batch.config import BatchUploadSettings, ProcessorSettings, Settings
from receipt_batch.container import AppContainer, get_app_container
from receipt_batch.main import app
from receipt_batch.services.batch_orchestrator import BatchUploadOrchestrator


@pytest.fixture
def container(tmp_path: Path) -> AppContainer:
    app_settings = Settings(
        batch=BatchUploadSettings(
            max_concurrent_uploads=2,
            staging_dir=tmp_path / "staging",
            persist_sessions=True,
            sessions_dir=tmp_path / "batches",
        ),
        processor=ProcessorSettings(provider="simulated", stage_latency_seconds=0.001),
    )
    return AppContainer(app_settings)


@pytest.fixture
def client(container):
    app.dependency_overrides[get_app_container] = lambda: container
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def upload_files(*names: str) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("files", (name, b"\xff\xd8\xff\xe0" + bytes(64), "image/jpeg")) for name in names]


def wait_for_status(client: TestClient, *statuses: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        batch = client.get("/batch").json()
        if batch["status"] in statuses or time.monotonic() > deadline:
            return batch
        time.sleep(0.02)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_upload_processes_batch(client, container):
    response = client.post("/batch/upload", files=upload_files("a.jpg", "b.jpg", "notes.txt"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["batch"]["status"] == "processing"
    assert payload["batch"]["total_items"] == 2
    assert payload["rejected"][0]["file_name"] == "notes.txt"

    batch = wait_for_status(client, "completed")
    assert batch["status"] == "completed"
    assert batch["completed_count"] == 2
    assert batch["total_progress"] == 100
    assert [item["file_name"] for item in batch["items"]] == ["a.jpg", "b.jpg"]

    stats = client.get("/batch/statistics").json()
    assert stats["success_rate"] == 100.0

    sessions = client.get("/batch/sessions").json()
    assert sessions["persistence_enabled"] is True
    assert sessions["batches"][0]["id"] == batch["id"]
    assert sessions["batches"][0]["status"] == "completed"


def test_upload_without_valid_files_is_rejected(client):
    response = client.post("/batch/upload", files=upload_files("notes.txt"))

    assert response.status_code == 400
    assert response.json()["detail"] == "No valid files to upload"


def test_upload_with_invalid_cap_leaves_batch_empty(client, container):
    response = client.post(
        "/batch/upload",
        params={"max_concurrent_uploads": 0},
        files=upload_files("a.jpg"),
    )

    assert response.status_code == 400
    batch = client.get("/batch").json()
    assert batch["total_items"] == 0
    assert batch["status"] == "idle"
    assert not any(Path(container.settings.batch.staging_dir).iterdir())


def test_upload_while_processing_conflicts(client, container):
    container.remote_processor.stage_latency = 0.5
    first = client.post("/batch/upload", files=upload_files("a.jpg"))
    assert first.status_code == 200

    second = client.post("/batch/upload", files=upload_files("b.jpg"))
    assert second.status_code == 409

    cancelled = client.post("/batch/cancel").json()
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelled_count"] == 1


def test_pause_resume_and_reset(client, container):
    container.remote_processor.stage_latency = 0.05
    client.post("/batch/upload", files=upload_files("a.jpg", "b.jpg", "c.jpg"))

    assert client.post("/batch/pause").json()["status"] == "paused"
    assert client.post("/batch/pause").json()["status"] == "paused"
    assert client.post("/batch/resume").json()["status"] == "processing"

    batch = wait_for_status(client, "completed")
    assert batch["completed_count"] == 3

    reset = client.post("/batch/reset").json()
    assert reset["status"] == "idle"
    assert reset["id"] != batch["id"]


def test_item_routes(client, container):
    container.remote_processor.failure_rate = 1.0
    client.post("/batch/upload", files=upload_files("a.jpg"))
    batch = wait_for_status(client, "completed")
    failed_id = batch["items"][0]["id"]
    assert batch["items"][0]["error"] == "AI processing failed"

    assert client.post("/batch/items/missing/retry").status_code == 404
    assert client.post(f"/batch/items/{failed_id}/cancel").status_code == 409
    assert client.delete(f"/batch/items/{failed_id}").status_code == 409

    container.remote_processor.failure_rate = 0.0
    retry = client.post(f"/batch/items/{failed_id}/retry")
    assert retry.status_code == 200
    assert retry.json()["retry_of"] == failed_id

    batch = wait_for_status(client, "completed")
    assert batch["completed_count"] == 1
    assert batch["failed_count"] == 1

    retried = client.post("/batch/retry").json()
    assert retried["retried"] == []


@pytest.mark.asyncio
async def test_stream_emits_updates_until_batch_finishes(candidates):
    orchestrator = BatchUploadOrchestrator(SimulatedRemoteProcessor(stage_latency=0.001))
    orchestrator.start(candidates[:2])

    response = await batch_status_stream(orchestrator)
    events = [event async for event in response.body_iterator]

    assert events[0]["event"] == "batch_update"
    assert events[-1]["event"] == "batch_completed"
    assert json.loads(events[-1]["data"])["completed_count"] == 2
    assert all(event["event"] == "batch_update" for event in events[:-1])
