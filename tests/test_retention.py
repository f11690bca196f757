from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from frame_archive.event_log import EventLog
from frame_archive.metrics import ArchiveMetrics
from frame_archive.retention import RetentionSweeper


def _touch(path: Path, *, age: float, size: int = 10, now: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    stamp = now - age
    os.utime(path, (stamp, stamp))
    return path


def test_sweep_removes_only_expired_frames(tmp_path: Path) -> None:
    now = time.time()
    old = _touch(tmp_path / "cam" / "frame_1.jpg", age=7200, now=now)
    fresh = _touch(tmp_path / "cam" / "frame_2.jpg", age=10, now=now)
    other = _touch(tmp_path / "cam" / "notes.txt", age=7200, now=now)
    video = _touch(tmp_path / "videos" / "frame_9.jpg", age=7200, now=now)
    clip = _touch(tmp_path / "videos" / "cam_1.mp4", age=7200, now=now)

    metrics = ArchiveMetrics()
    event_log = EventLog()
    sweeper = RetentionSweeper(
        tmp_path,
        retention_window=3600,
        interval=60,
        metrics=metrics,
        event_log=event_log,
        clock=lambda: now,
    )
    report = sweeper.sweep()

    assert report.removed == 1
    assert report.expired == 1
    assert report.bytes_freed == 10
    assert not old.exists()
    assert fresh.exists()
    assert other.exists()
    assert video.exists()
    assert clip.exists()
    assert metrics.snapshot()["frames_expired"] == 1
    assert event_log.tail(category="retention")[0].event == "sweep"


def test_storage_cap_removes_oldest_frames_first(tmp_path: Path) -> None:
    now = time.time()
    oldest = _touch(tmp_path / "a" / "frame_1.jpg", age=300, size=100, now=now)
    middle = _touch(tmp_path / "b" / "frame_1.jpg", age=200, size=100, now=now)
    newest = _touch(tmp_path / "a" / "frame_2.jpg", age=100, size=100, now=now)

    sweeper = RetentionSweeper(
        tmp_path, retention_window=3600, interval=60, max_bytes=150, clock=lambda: now
    )
    report = sweeper.sweep()

    assert report.over_quota == 2
    assert report.remaining_bytes == 100
    assert not oldest.exists()
    assert not middle.exists()
    assert newest.exists()


def test_sweep_handles_missing_output_dir(tmp_path: Path) -> None:
    sweeper = RetentionSweeper(tmp_path / "absent", retention_window=60, interval=60)
    report = sweeper.sweep()
    assert report.removed == 0
    assert report.errors == []


def test_sweep_continues_after_unlink_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    now = time.time()
    blocked = _touch(tmp_path / "a" / "frame_1.jpg", age=7200, now=now)
    removable = _touch(tmp_path / "b" / "frame_1.jpg", age=7200, now=now)
    original_unlink = Path.unlink

    def flaky_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == blocked:
            raise PermissionError("read-only")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)
    report = RetentionSweeper(tmp_path, retention_window=60, interval=60, clock=lambda: now).sweep()

    assert report.removed == 1
    assert len(report.errors) == 1
    assert blocked.exists()
    assert not removable.exists()


def test_run_loop_stops_on_shutdown(tmp_path: Path) -> None:
    async def runner() -> None:
        now = time.time()
        stale = _touch(tmp_path / "cam" / "frame_1.jpg", age=7200, now=now)
        sweeper = RetentionSweeper(tmp_path, retention_window=60, interval=0.05)
        shutdown = asyncio.Event()
        task = asyncio.create_task(sweeper.run(shutdown))
        for _ in range(100):
            if not stale.exists():
                break
            await asyncio.sleep(0.02)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)
        assert not stale.exists()

    asyncio.run(runner())


def test_invalid_arguments_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        RetentionSweeper(tmp_path, retention_window=0, interval=60)
    with pytest.raises(ValueError):
        RetentionSweeper(tmp_path, retention_window=60, interval=60, max_bytes=0)
