"""Age- and size-based pruning of persisted frames."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .event_log import EventLog
from .frames import FRAME_GLOB, VIDEOS_DIRNAME
from .metrics import ArchiveMetrics


@dataclass(slots=True)
class RetentionReport:
    """Outcome of one retention sweep."""

    removed: int = 0
    bytes_freed: int = 0
    expired: int = 0
    over_quota: int = 0
    remaining_bytes: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "removed": self.removed,
            "bytes_freed": self.bytes_freed,
            "expired": self.expired,
            "over_quota": self.over_quota,
            "remaining_bytes": self.remaining_bytes,
            "errors": list(self.errors),
        }


@dataclass(frozen=True, slots=True)
class _FrameFile:
    path: Path
    mtime: float
    size: int


class RetentionSweeper:
    """Delete frame files that outlived the retention window.

    Video artifacts below ``videos/`` are never touched. When a storage cap
    is configured the oldest surviving frames are removed until the total
    fits.
    """

    def __init__(
        self,
        output_dir: Path,
        *,
        retention_window: float,
        interval: float,
        max_bytes: int | None = None,
        metrics: ArchiveMetrics | None = None,
        event_log: EventLog | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if retention_window <= 0:
            raise ValueError("retention_window must be positive")
        if interval <= 0:
            raise ValueError("interval must be positive")
        if max_bytes is not None and max_bytes <= 0:
            raise ValueError("max_bytes must be positive when provided")
        self._output_dir = Path(output_dir)
        self._retention_window = float(retention_window)
        self._interval = float(interval)
        self._max_bytes = max_bytes
        self._metrics = metrics
        self._event_log = event_log
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._clock = clock

    @property
    def interval(self) -> float:
        return self._interval

    async def run(self, shutdown: asyncio.Event) -> None:
        """Sweep every ``interval`` seconds until ``shutdown`` is set."""

        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if shutdown.is_set():
                break
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                self._logger.exception("Retention sweep failed")

    def sweep(self) -> RetentionReport:
        """Run one pruning pass over the frame store."""

        report = RetentionReport()
        cutoff = self._clock() - self._retention_window
        survivors: list[_FrameFile] = []
        for frame in self._scan(report):
            if frame.mtime < cutoff:
                if self._remove(frame, report):
                    report.expired += 1
            else:
                survivors.append(frame)

        total = sum(frame.size for frame in survivors)
        if self._max_bytes is not None and total > self._max_bytes:
            survivors.sort(key=lambda frame: (frame.mtime, frame.path.name))
            for frame in survivors:
                if total <= self._max_bytes:
                    break
                if self._remove(frame, report):
                    report.over_quota += 1
                    total -= frame.size
        report.remaining_bytes = total

        if self._metrics is not None and report.removed:
            self._metrics.frames_expired.inc(report.removed)
            self._metrics.retention_bytes_freed.inc(report.bytes_freed)
        if report.removed or report.errors:
            self._logger.info(
                "Retention sweep removed %d frames (%d bytes), %d errors",
                report.removed,
                report.bytes_freed,
                len(report.errors),
            )
            if self._event_log is not None:
                self._event_log.record(
                    "retention",
                    "sweep",
                    f"Removed {report.removed} frames",
                    metadata={
                        "expired": report.expired,
                        "over_quota": report.over_quota or None,
                        "bytes_freed": report.bytes_freed,
                        "errors": len(report.errors) or None,
                    },
                )
        return report

    def _scan(self, report: RetentionReport) -> list[_FrameFile]:
        if not self._output_dir.is_dir():
            return []
        try:
            directories = [
                entry
                for entry in self._output_dir.iterdir()
                if entry.is_dir() and entry.name != VIDEOS_DIRNAME
            ]
        except OSError as exc:
            self._logger.error("Unable to list %s: %s", self._output_dir, exc)
            report.errors.append(f"{self._output_dir}: {exc}")
            return []
        frames: list[_FrameFile] = []
        for directory in sorted(directories):
            try:
                paths = list(directory.glob(FRAME_GLOB))
            except OSError as exc:
                self._logger.error("Unable to scan %s: %s", directory, exc)
                report.errors.append(f"{directory}: {exc}")
                continue
            for path in paths:
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    self._logger.warning("Unable to stat %s: %s", path, exc)
                    report.errors.append(f"{path}: {exc}")
                    continue
                frames.append(_FrameFile(path=path, mtime=stat.st_mtime, size=stat.st_size))
        return frames

    def _remove(self, frame: _FrameFile, report: RetentionReport) -> bool:
        try:
            frame.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            self._logger.error("Failed to remove expired frame %s: %s", frame.path, exc)
            report.errors.append(f"{frame.path}: {exc}")
            return False
        self._logger.debug("Removed old frame %s", frame.path)
        report.removed += 1
        report.bytes_freed += frame.size
        return True


__all__ = ["RetentionReport", "RetentionSweeper"]
