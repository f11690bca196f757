from __future__ import annotations

import threading
from datetime import datetime, timezone

from frame_archive.state import CameraRegistry


def test_registry_tracks_counters_per_camera() -> None:
    registry = CameraRegistry()
    registry.mark_active("cam-b")
    assert registry.record_persisted("cam-a") == 1
    assert registry.record_persisted("cam-a") == 2
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    registry.record_video("cam-a", when)

    assert registry.active_cameras() == ["cam-a", "cam-b"]
    state = registry.get("cam-a")
    assert state is not None
    assert state.frames_persisted == 2
    assert state.videos_generated == 1
    assert state.last_video_at == when
    assert registry.get("missing") is None


def test_consolidated_mark_never_moves_backwards() -> None:
    registry = CameraRegistry()
    assert registry.consolidated_through("cam") is None
    registry.advance_consolidated("cam", 10)
    registry.advance_consolidated("cam", 4)
    assert registry.consolidated_through("cam") == 10


def test_snapshot_returns_copies() -> None:
    registry = CameraRegistry()
    registry.record_persisted("cam")
    snapshot = registry.snapshot()
    snapshot["cam"].frames_persisted = 999
    assert registry.get("cam").frames_persisted == 1
    assert snapshot["cam"].to_dict()["camera_id"] == "cam"


def test_concurrent_updates_are_not_lost() -> None:
    registry = CameraRegistry()

    def worker() -> None:
        for _ in range(500):
            registry.record_persisted("cam")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get("cam").frames_persisted == 2000
