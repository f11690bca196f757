"""Single consumer writing queued frames to per-camera stores."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path

from .event_log import EventLog
from .frames import (
    FRAME_GLOB,
    FrameSubmission,
    FrameValidationError,
    frame_filename,
    normalise_frame,
    parse_frame_path,
)
from .ingest import IngestionQueue
from .metrics import ArchiveMetrics
from .scheduler import ConsolidationScheduler
from .state import CameraRegistry


class FramePersistError(RuntimeError):
    """Raised when a frame could not be written to disk."""


def _same_sequence(camera_dir: Path, sequence: int, keep: Path) -> list[Path]:
    stale: list[Path] = []
    for path in camera_dir.glob(FRAME_GLOB):
        if path == keep:
            continue
        parsed = parse_frame_path(path, camera_dir.name)
        if parsed is not None and parsed.sequence == sequence:
            stale.append(path)
    return stale


def write_frame_file(directory: Path, frame: FrameSubmission, *, quality: int) -> Path:
    """Validate ``frame`` and write it below ``directory``; return the file path.

    A camera holds at most one file per sequence: a resubmission replaces the
    earlier file even when its timestamp, and so its name, differs.
    """

    if not frame.camera_id:
        raise FrameValidationError("camera_id must not be empty")
    if not frame.payload:
        raise FrameValidationError("payload must not be empty")
    jpeg = normalise_frame(frame.payload, quality=quality)
    camera_dir = directory / frame.camera_id
    try:
        camera_dir.mkdir(parents=True, exist_ok=True)
        target = camera_dir / frame_filename(frame.sequence, frame.timestamp)
        stale = _same_sequence(camera_dir, frame.sequence, target)
        temp_path = target.with_name(f".{target.name}.tmp")
        temp_path.write_bytes(jpeg)
        os.replace(temp_path, target)
        for path in stale:
            path.unlink(missing_ok=True)
    except OSError as exc:
        raise FramePersistError(f"Failed to write frame file: {exc}") from exc
    return target


class PersistenceWorker:
    """Drain the ingestion queue in arrival order and persist each frame.

    One bad frame never stops the loop: the failure is logged, counted and
    the worker continues with the next item. Failed frames are not retried.
    """

    def __init__(
        self,
        *,
        queue: IngestionQueue,
        output_dir: Path,
        registry: CameraRegistry,
        scheduler: ConsolidationScheduler,
        batch_threshold: int,
        jpeg_quality: int = 90,
        metrics: ArchiveMetrics | None = None,
        event_log: EventLog | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if batch_threshold <= 0:
            raise ValueError("batch_threshold must be positive")
        self._queue = queue
        self._output_dir = Path(output_dir)
        self._registry = registry
        self._scheduler = scheduler
        self._batch_threshold = int(batch_threshold)
        self._jpeg_quality = int(jpeg_quality)
        self._metrics = metrics
        self._event_log = event_log
        self._logger = logger if logger is not None else logging.getLogger(__name__)

    async def run(self, shutdown: asyncio.Event) -> None:
        """Persist frames until ``shutdown`` is set, then drain what is queued."""

        while not shutdown.is_set():
            frame = await self._next_frame(shutdown)
            if frame is None:
                break
            await self.process(frame)
        await self.drain()

    async def drain(self) -> int:
        """Persist every frame already in the queue without waiting for more."""

        drained = 0
        while True:
            frame = self._queue.get_nowait()
            if frame is None:
                break
            await self.process(frame)
            drained += 1
        if drained:
            self._logger.info("Persisted %d queued frames during shutdown", drained)
        return drained

    async def process(self, frame: FrameSubmission) -> Path | None:
        started = time.perf_counter()
        try:
            path = await asyncio.to_thread(
                write_frame_file, self._output_dir, frame, quality=self._jpeg_quality
            )
        except FrameValidationError as exc:
            self._record_failure(frame, "validate", exc)
            return None
        except FramePersistError as exc:
            self._record_failure(frame, "write", exc)
            return None
        except Exception as exc:  # pragma: no cover - unexpected failure
            self._logger.exception("Unexpected error persisting frame from %s", frame.camera_id)
            self._record_failure(frame, "unexpected", exc)
            return None
        count = self._registry.record_persisted(frame.camera_id, frame.timestamp)
        if self._metrics is not None:
            self._metrics.frames_persisted.labels(camera=frame.camera_id).inc()
            self._metrics.persist_latency.observe(time.perf_counter() - started)
        if count % self._batch_threshold == 0:
            self._logger.info(
                "Frame saved: camera=%s frame=%s file=%s (%d persisted)",
                frame.camera_id,
                frame.sequence,
                path,
                count,
            )
            if not self._scheduler.request(ConsolidationScheduler.COUNT):
                self._logger.debug("Consolidation already pending; count trigger coalesced")
        return path

    async def _next_frame(self, shutdown: asyncio.Event) -> FrameSubmission | None:
        frame = self._queue.get_nowait()
        if frame is not None:
            return frame
        get_task = asyncio.ensure_future(self._queue.get())
        shutdown_task = asyncio.ensure_future(shutdown.wait())
        try:
            await asyncio.wait({get_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown_task.cancel()
            if not get_task.done():
                get_task.cancel()
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        return None

    def _record_failure(self, frame: FrameSubmission, stage: str, exc: BaseException) -> None:
        self._logger.error(
            "Failed to save frame: camera=%s frame=%s stage=%s error=%s",
            frame.camera_id,
            frame.sequence,
            stage,
            exc,
        )
        if self._metrics is not None:
            self._metrics.frame_errors.labels(stage=stage).inc()
        if self._event_log is not None:
            self._event_log.record(
                "persistence",
                "frame_rejected",
                str(exc),
                camera_id=frame.camera_id,
                metadata={
                    "sequence": frame.sequence,
                    "stage": stage,
                },
            )


__all__ = ["FramePersistError", "PersistenceWorker", "write_frame_file"]
