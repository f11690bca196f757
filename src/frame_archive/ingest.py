"""Bounded, non-blocking ingestion queue for camera frames."""

from __future__ import annotations

import asyncio
import logging

from .frames import VIDEOS_DIRNAME, FrameSubmission
from .metrics import ArchiveMetrics
from .state import CameraRegistry


def is_safe_camera_id(camera_id: str) -> bool:
    """Return ``True`` when ``camera_id`` maps to a single child directory."""

    if camera_id != camera_id.strip() or camera_id.startswith("."):
        return False
    if camera_id == VIDEOS_DIRNAME:
        return False
    return not any(char in camera_id for char in ("/", "\\", "\0"))


class SubmissionRejected(RuntimeError):
    """Base class for synchronous submission rejections."""


class QueueFull(SubmissionRejected):
    """Raised when the ingestion queue has no free slot."""


class QueueClosed(SubmissionRejected):
    """Raised when frames are submitted after shutdown began."""


class InvalidSubmission(SubmissionRejected, ValueError):
    """Raised for submissions with an empty camera id or payload."""


class IngestionQueue:
    """Accept frames from transport callers without ever blocking them.

    ``submit`` either enqueues immediately or raises. It must be called from
    the event loop thread; any number of coroutines may call it concurrently.
    """

    def __init__(
        self,
        capacity: int,
        *,
        registry: CameraRegistry,
        metrics: ArchiveMetrics | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = int(capacity)
        self._queue: asyncio.Queue[FrameSubmission] = asyncio.Queue(maxsize=self._capacity)
        self._registry = registry
        self._metrics = metrics
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    def submit(self, frame: FrameSubmission) -> None:
        if self._closed:
            self._reject("closed", frame)
            raise QueueClosed("Ingestion queue is closed")
        if not frame.camera_id or not frame.camera_id.strip():
            self._reject("invalid", frame)
            raise InvalidSubmission("camera_id must not be empty")
        if not is_safe_camera_id(frame.camera_id):
            self._reject("invalid", frame)
            raise InvalidSubmission(f"camera_id {frame.camera_id!r} cannot be used as a directory name")
        if not frame.payload:
            self._reject("invalid", frame)
            raise InvalidSubmission("payload must not be empty")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._reject("queue_full", frame)
            raise QueueFull(
                f"Ingestion queue full ({self._capacity} frames); dropping frame "
                f"{frame.sequence} from {frame.camera_id}"
            ) from None
        self._registry.mark_active(frame.camera_id)
        if self._metrics is not None:
            self._metrics.submissions_accepted.inc()
            self._metrics.queue_depth.set(self._queue.qsize())
        self._logger.debug(
            "Frame queued: camera=%s sequence=%s size=%d",
            frame.camera_id,
            frame.sequence,
            len(frame.payload),
        )

    async def get(self) -> FrameSubmission:
        frame = await self._queue.get()
        self._queue.task_done()
        if self._metrics is not None:
            self._metrics.queue_depth.set(self._queue.qsize())
        return frame

    def get_nowait(self) -> FrameSubmission | None:
        try:
            frame = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self._queue.task_done()
        if self._metrics is not None:
            self._metrics.queue_depth.set(self._queue.qsize())
        return frame

    def close(self) -> None:
        """Refuse further submissions; queued frames stay available."""

        self._closed = True

    def release(self) -> int:
        """Discard anything still queued and return how many were dropped."""

        self._closed = True
        dropped = 0
        while self.get_nowait() is not None:
            dropped += 1
        if dropped:
            self._logger.warning("Released ingestion queue with %d unprocessed frames", dropped)
        return dropped

    def _reject(self, reason: str, frame: FrameSubmission) -> None:
        if self._metrics is not None:
            self._metrics.submissions_rejected.labels(reason=reason).inc()
        if reason == "queue_full":
            self._logger.warning(
                "Frame processing queue full, dropping frame: camera=%s sequence=%s",
                frame.camera_id,
                frame.sequence,
            )
        else:
            self._logger.debug(
                "Frame rejected (%s): camera=%r sequence=%s", reason, frame.camera_id, frame.sequence
            )


__all__ = [
    "IngestionQueue",
    "InvalidSubmission",
    "QueueClosed",
    "QueueFull",
    "SubmissionRejected",
    "is_safe_camera_id",
]
