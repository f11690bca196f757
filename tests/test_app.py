from __future__ import annotations

import base64
import time
from pathlib import Path

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from conftest import FakeEncoder, make_jpeg
from frame_archive.app import create_app
from frame_archive.archiver import FrameArchiver
from frame_archive.config import ArchiveConfig


def _archiver(tmp_path: Path, **overrides) -> tuple[FrameArchiver, FakeEncoder]:
    encoder = FakeEncoder()
    config = ArchiveConfig(
        output_dir=tmp_path,
        consolidation_interval=60,
        retention_sweep_interval=60,
        shutdown_timeout=2,
        **overrides,
    )
    return FrameArchiver(config, encoder=encoder), encoder


@pytest.fixture
def running(tmp_path: Path):
    archiver, encoder = _archiver(tmp_path)
    app = create_app(archiver=archiver)
    with TestClient(app) as test_client:
        yield test_client, archiver, encoder


def _wait_for_persisted(client: TestClient, camera_id: str, count: int) -> dict:
    deadline = time.monotonic() + 3
    while time.monotonic() < deadline:
        status = client.get("/status").json()
        camera = status["cameras"].get(camera_id)
        if camera and camera["frames_persisted"] >= count:
            return status
        time.sleep(0.02)
    raise AssertionError("frames were not persisted in time")


def test_frame_upload_is_accepted_and_persisted(running) -> None:
    client, _, _ = running
    response = client.post(
        "/cameras/front/frames",
        params={"sequence": 4, "timestamp": "2024-05-01T10:00:00+00:00"},
        content=make_jpeg(),
    )
    assert response.status_code == 202
    assert response.json()["camera_id"] == "front"
    assert response.json()["sequence"] == 4

    response = client.post(
        "/cameras/front/frames",
        params={"sequence": 5},
        content=base64.b64encode(make_jpeg()),
    )
    assert response.status_code == 202

    status = _wait_for_persisted(client, "front", 2)
    assert status["directories"]["front"]["frame_count"] == 2
    assert status["running"] is True


def test_invalid_upload_returns_400(running) -> None:
    client, _, _ = running
    assert client.post("/cameras/front/frames", content=b"").status_code == 400
    assert client.post("/cameras/videos/frames", content=make_jpeg()).status_code == 400
    assert client.post("/cameras/front/frames", params={"sequence": -1}, content=b"x").status_code == 422


def test_full_queue_returns_503(tmp_path: Path) -> None:
    archiver, _ = _archiver(tmp_path, queue_capacity=1)
    client = TestClient(create_app(archiver=archiver))
    assert client.post("/cameras/cam/frames", content=make_jpeg()).status_code == 202
    response = client.post("/cameras/cam/frames", content=make_jpeg())
    assert response.status_code == 503
    assert response.headers["retry-after"] == "1"


def test_consolidate_endpoint_runs_forced_pass(running) -> None:
    client, _, encoder = running
    for sequence in (1, 2, 3):
        client.post("/cameras/cam/frames", params={"sequence": sequence}, content=make_jpeg())
    _wait_for_persisted(client, "cam", 3)

    report = client.post("/consolidate").json()
    assert report["forced"] is True
    assert len(report["videos"]) == 1
    assert encoder.sequences() == [1, 2, 3]


def test_sweep_events_and_metrics_endpoints(running) -> None:
    client, archiver, _ = running
    sweep = client.post("/retention/sweep").json()
    assert sweep["removed"] == 0

    archiver.event_log.record("test", "marker", "hello")
    events = client.get("/events", params={"category": "test"}).json()["entries"]
    assert [entry["event"] for entry in events] == ["marker"]
    assert len(client.get("/events", params={"limit": 1}).json()["entries"]) == 1

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "frame_archive_submissions_accepted_total" in response.text


def test_shutdown_hook_stops_archiver(tmp_path: Path) -> None:
    archiver, _ = _archiver(tmp_path)
    with TestClient(create_app(archiver=archiver)):
        assert archiver.running
    assert not archiver.running
    assert archiver.queue.closed
