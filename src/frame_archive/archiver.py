"""Lifecycle controller wiring the archive workers together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from .config import ArchiveConfig
from .consolidation import ConsolidationEngine, ConsolidationReport
from .encoding import FrameEncoder, create_encoder
from .event_log import EventLog
from .frames import FrameSubmission
from .ingest import IngestionQueue, InvalidSubmission
from .metrics import ArchiveMetrics
from .persistence import PersistenceWorker
from .retention import RetentionReport, RetentionSweeper
from .scheduler import ConsolidationScheduler
from .state import CameraRegistry
from .version import APP_VERSION


class FrameArchiver:
    """Own the ingestion queue and the three background workers.

    ``start`` launches the persistence worker, the consolidation loop and the
    retention loop on the running event loop. ``stop`` drains what was
    already accepted, runs a final forced consolidation pass and then tears
    the workers down; calling it again simply waits for the first call.
    With ``consolidation_enabled`` off neither the loop nor the final pass
    runs, and only ``consolidate_now`` produces videos.
    """

    def __init__(
        self,
        config: ArchiveConfig | None = None,
        *,
        encoder: FrameEncoder | None = None,
        metrics: ArchiveMetrics | None = None,
        event_log: EventLog | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config if config is not None else ArchiveConfig()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._metrics = metrics if metrics is not None else ArchiveMetrics()
        if event_log is None:
            event_log = EventLog(
                self._config.event_log_path,
                max_entries=self._config.event_log_entries,
                logger=logger,
            )
        self._event_log = event_log
        self._registry = CameraRegistry()
        self._encoder = encoder if encoder is not None else create_encoder(self._config)
        self._queue = IngestionQueue(
            self._config.queue_capacity,
            registry=self._registry,
            metrics=self._metrics,
            logger=logger,
        )
        self._scheduler = ConsolidationScheduler(self._config.consolidation_interval)
        self._persistence = PersistenceWorker(
            queue=self._queue,
            output_dir=self._config.output_dir,
            registry=self._registry,
            scheduler=self._scheduler,
            batch_threshold=self._config.max_frames_per_batch,
            jpeg_quality=self._config.jpeg_quality,
            metrics=self._metrics,
            event_log=self._event_log,
            logger=logger,
        )
        self._engine = ConsolidationEngine(
            config=self._config,
            registry=self._registry,
            encoder=self._encoder,
            metrics=self._metrics,
            event_log=self._event_log,
            logger=logger,
        )
        self._sweeper = RetentionSweeper(
            self._config.output_dir,
            retention_window=self._config.retention_window,
            interval=self._config.retention_sweep_interval,
            max_bytes=self._config.max_frame_storage_bytes,
            metrics=self._metrics,
            event_log=self._event_log,
            logger=logger,
        )
        self._shutdown: asyncio.Event | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_task: asyncio.Task[ConsolidationReport | None] | None = None
        self._start_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def config(self) -> ArchiveConfig:
        return self._config

    @property
    def registry(self) -> CameraRegistry:
        return self._registry

    @property
    def metrics(self) -> ArchiveMetrics:
        return self._metrics

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def queue(self) -> IngestionQueue:
        return self._queue

    @property
    def running(self) -> bool:
        return bool(self._tasks) and self._stop_task is None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Launch the background workers; a second call is a no-op."""

        async with self._start_lock:
            if self._stop_task is not None:
                raise RuntimeError("Archiver has been stopped and cannot be restarted")
            if self._tasks:
                return
            await asyncio.to_thread(self._prepare_storage)
            shutdown = asyncio.Event()
            self._shutdown = shutdown
            self._tasks = {
                "persistence": asyncio.create_task(
                    self._persistence.run(shutdown), name="frame-archive-persistence"
                ),
                "retention": asyncio.create_task(
                    self._sweeper.run(shutdown), name="frame-archive-retention"
                ),
            }
            if self._config.consolidation_enabled:
                self._tasks["consolidation"] = asyncio.create_task(
                    self._consolidation_loop(shutdown), name="frame-archive-consolidation"
                )
            else:
                self._logger.info("Scheduled consolidation disabled; frames stay on disk")
        self._logger.info(
            "Frame archive %s started: output=%s batch=%d interval=%.1fs disposition=%s",
            APP_VERSION,
            self._config.output_dir,
            self._config.max_frames_per_batch,
            self._config.consolidation_interval,
            self._config.disposition.value,
        )
        self._event_log.record(
            "lifecycle",
            "started",
            "Frame archive started",
            metadata={"output_dir": str(self._config.output_dir)},
        )

    async def stop(self) -> ConsolidationReport | None:
        """Shut down in order and return the final consolidation report."""

        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown_sequence())
        return await asyncio.shield(self._stop_task)

    async def _shutdown_sequence(self) -> ConsolidationReport | None:
        self._logger.info("Stopping frame archive")
        if self._shutdown is not None:
            self._shutdown.set()
        self._queue.close()

        timeout = self._config.shutdown_timeout
        persistence = self._tasks.get("persistence")
        if persistence is not None:
            await self._wait_for({"persistence": persistence}, timeout)

        report: ConsolidationReport | None = None
        if self._tasks and self._config.consolidation_enabled:
            try:
                report = await self._engine.run_pass(force=True, trigger="shutdown")
            except Exception:
                self._logger.exception("Final consolidation pass failed")

        remaining = {
            name: task for name, task in self._tasks.items() if name != "persistence"
        }
        if remaining:
            await self._wait_for(remaining, timeout)

        dropped = self._queue.release()
        self._logger.info("Frame archive stopped")
        self._event_log.record(
            "lifecycle",
            "stopped",
            "Frame archive stopped",
            metadata={
                "videos": len(report.videos) if report is not None else None,
                "dropped_frames": dropped or None,
            },
        )
        return report

    async def _wait_for(self, tasks: dict[str, asyncio.Task[None]], timeout: float) -> None:
        done, pending = await asyncio.wait(set(tasks.values()), timeout=timeout)
        for name, task in tasks.items():
            if task in pending:
                self._logger.warning(
                    "Worker %s did not stop within %.1fs; cancelling", name, timeout
                )
                task.cancel()
            elif not task.cancelled() and task.exception() is not None:
                self._logger.error(
                    "Worker %s exited with an error",
                    name,
                    exc_info=task.exception(),
                )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _consolidation_loop(self, shutdown: asyncio.Event) -> None:
        while True:
            trigger = await self._scheduler.wait_for_request(shutdown)
            if trigger is None:
                break
            try:
                await self._engine.run_pass(trigger=trigger)
            except Exception:
                self._logger.exception("Consolidation pass failed")

    def _prepare_storage(self) -> None:
        self._config.output_dir.mkdir(parents=True, exist_ok=True)
        self._config.videos_dir.mkdir(parents=True, exist_ok=True)
        self._engine.discover_cameras()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def submit(
        self,
        camera_id: str,
        payload: bytes,
        timestamp: datetime | None = None,
        sequence: int = 0,
    ) -> None:
        """Enqueue a frame or raise ``QueueFull``/``QueueClosed``/``InvalidSubmission``."""

        kwargs: dict[str, Any] = {"camera_id": camera_id, "sequence": sequence}
        if timestamp is not None:
            kwargs["timestamp"] = timestamp
        try:
            kwargs["payload"] = bytes(payload) if payload is not None else b""
            frame = FrameSubmission(**kwargs)
        except (TypeError, ValueError) as exc:
            self._metrics.submissions_rejected.labels(reason="invalid").inc()
            raise InvalidSubmission(str(exc)) from exc
        self._queue.submit(frame)

    async def consolidate_now(self, *, force: bool = True) -> ConsolidationReport:
        """Run a consolidation pass immediately, waiting for any pass in flight."""

        return await self._engine.run_pass(force=force, trigger="manual")

    async def sweep_now(self) -> RetentionReport:
        return await asyncio.to_thread(self._sweeper.sweep)

    def status(self) -> dict[str, Any]:
        """Return a JSON-friendly snapshot of queue, cameras and storage."""

        cameras = {
            camera_id: state.to_dict() for camera_id, state in self._registry.snapshot().items()
        }
        return {
            "version": APP_VERSION,
            "running": self.running,
            "queue": {
                "depth": self._queue.qsize(),
                "capacity": self._queue.capacity,
                "closed": self._queue.closed,
            },
            "cameras": cameras,
            "directories": self._engine.frame_directories(),
            "metrics": self._metrics.snapshot(),
            "config": self._config.to_dict(),
        }


__all__ = ["FrameArchiver"]
