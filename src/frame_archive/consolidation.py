"""Batch consolidation of persisted frames into video artifacts."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from .config import ArchiveConfig, FrameDisposition
from .encoding import EncoderError, FrameEncoder, build_playlist
from .event_log import EventLog
from .frames import (
    FRAME_GLOB,
    MARK_FILENAME,
    VIDEOS_DIRNAME,
    PersistedFrame,
    format_timestamp,
    parse_frame_path,
    sort_frames,
    with_sequence,
)
from .metrics import ArchiveMetrics
from .state import CameraRegistry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ChunkOutcome:
    """Result of encoding one chunk of a camera's frames."""

    camera_id: str
    index: int
    frame_count: int
    first_sequence: int
    last_sequence: int
    output: Path | None
    success: bool
    error: str | None = None
    lenient: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "index": self.index,
            "frame_count": self.frame_count,
            "first_sequence": self.first_sequence,
            "last_sequence": self.last_sequence,
            "output": str(self.output) if self.output is not None else None,
            "success": self.success,
            "error": self.error,
            "lenient": self.lenient,
        }


@dataclass(slots=True)
class ConsolidationReport:
    """Summary of a single consolidation pass."""

    trigger: str
    forced: bool
    started_at: datetime = field(default_factory=_utcnow)
    cameras_scanned: list[str] = field(default_factory=list)
    cameras_skipped: list[str] = field(default_factory=list)
    chunks: list[ChunkOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def videos(self) -> list[Path]:
        return [chunk.output for chunk in self.chunks if chunk.success and chunk.output is not None]

    @property
    def failures(self) -> list[ChunkOutcome]:
        return [chunk for chunk in self.chunks if not chunk.success]

    def to_dict(self) -> dict[str, object]:
        return {
            "trigger": self.trigger,
            "forced": self.forced,
            "started_at": self.started_at.isoformat(),
            "cameras_scanned": list(self.cameras_scanned),
            "cameras_skipped": list(self.cameras_skipped),
            "videos": [str(path) for path in self.videos],
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "errors": list(self.errors),
        }


def list_camera_frames(camera_dir: Path) -> list[PersistedFrame]:
    """Return the frames stored in ``camera_dir`` ordered by numeric sequence."""

    if not camera_dir.is_dir():
        return []
    frames: list[PersistedFrame] = []
    for path in camera_dir.glob(FRAME_GLOB):
        parsed = parse_frame_path(path, camera_dir.name)
        if parsed is not None:
            frames.append(parsed)
    return sort_frames(frames)


def plan_chunks(
    frames: Sequence[PersistedFrame],
    *,
    chunk_size: int,
    min_frames: int,
    single: bool = False,
    force: bool = False,
) -> list[list[PersistedFrame]]:
    """Split ordered ``frames`` into encoder chunks.

    A trailing chunk shorter than ``min_frames`` waits for a later pass
    unless ``force`` is set.
    """

    ordered = list(frames)
    if not ordered:
        return []
    if single:
        return [ordered]
    chunks = [ordered[start:start + chunk_size] for start in range(0, len(ordered), chunk_size)]
    if chunks and len(chunks[-1]) < min_frames and not force:
        chunks.pop()
    return chunks


def renumber_frames(frames: Sequence[PersistedFrame], start: int) -> int:
    """Rename ``frames`` so their sequences run contiguously from ``start``.

    Frames are processed in ascending order and only ever renamed to a lower
    or equal sequence, so a rename never lands on a frame still waiting to be
    moved. Existing targets are left alone. Returns the number renamed.
    """

    renamed = 0
    next_sequence = int(start)
    for frame in sort_frames(list(frames)):
        if frame.sequence == next_sequence:
            next_sequence += 1
            continue
        if frame.sequence < next_sequence:
            # Already below the contiguous run; leave untouched.
            continue
        target = frame.path.with_name(with_sequence(frame.path.name, next_sequence))
        if target.exists():
            break
        os.rename(frame.path, target)
        renamed += 1
        next_sequence += 1
    return renamed


def read_consolidated_mark(camera_dir: Path) -> int | None:
    """Return the stored consolidated mark for ``camera_dir``, if any."""

    try:
        text = (camera_dir / MARK_FILENAME).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        value = int(text)
    except ValueError:
        return None
    return value if value >= 0 else None


def write_consolidated_mark(camera_dir: Path, sequence: int) -> Path:
    target = camera_dir / MARK_FILENAME
    temp_path = target.with_name(f"{target.name}.tmp")
    temp_path.write_text(f"{int(sequence)}\n", encoding="utf-8")
    os.replace(temp_path, target)
    return target


class ConsolidationEngine:
    """Scan every active camera and turn its frames into video artifacts."""

    def __init__(
        self,
        *,
        config: ArchiveConfig,
        registry: CameraRegistry,
        encoder: FrameEncoder,
        metrics: ArchiveMetrics | None = None,
        event_log: EventLog | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._registry = registry
        self._encoder = encoder
        self._metrics = metrics
        self._event_log = event_log
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def videos_dir(self) -> Path:
        return self._config.videos_dir

    def camera_dir(self, camera_id: str) -> Path:
        return self._config.output_dir / camera_id

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def discover_cameras(self) -> list[str]:
        """Register camera directories left on disk by an earlier run."""

        root = self._config.output_dir
        if not root.is_dir():
            return []
        found: list[str] = []
        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or entry.name == VIDEOS_DIRNAME or entry.name.startswith("."):
                continue
            if next(entry.glob(FRAME_GLOB), None) is None:
                continue
            self._registry.mark_active(entry.name)
            found.append(entry.name)
            if self._config.disposition is FrameDisposition.DELETE:
                continue
            try:
                mark = read_consolidated_mark(entry)
            except OSError as exc:
                self._logger.warning("Unable to read consolidated mark for %s: %s", entry.name, exc)
                continue
            if mark is not None:
                self._registry.advance_consolidated(entry.name, mark)
                self._logger.debug("Restored consolidated mark %d for %s", mark, entry.name)
        if found:
            self._logger.info("Discovered %d camera directories with frames", len(found))
        return found

    def frame_directories(self) -> dict[str, dict[str, object]]:
        """Return frame counts per camera directory for status reporting."""

        info: dict[str, dict[str, object]] = {}
        root = self._config.output_dir
        if not root.is_dir():
            return info
        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or entry.name == VIDEOS_DIRNAME or entry.name.startswith("."):
                continue
            frames = list_camera_frames(entry)
            info[entry.name] = {
                "path": str(entry),
                "frame_count": len(frames),
                "first_sequence": frames[0].sequence if frames else None,
                "last_sequence": frames[-1].sequence if frames else None,
            }
        return info

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    async def run_pass(self, *, force: bool = False, trigger: str = "manual") -> ConsolidationReport:
        """Consolidate all active cameras; passes never overlap."""

        async with self._lock:
            report = ConsolidationReport(trigger=trigger, forced=force, started_at=self._clock())
            if self._metrics is not None:
                self._metrics.consolidation_passes.labels(trigger=trigger).inc()
            for camera_id in self._registry.active_cameras():
                try:
                    await self._consolidate_camera(camera_id, report, force=force)
                except Exception as exc:
                    self._logger.exception("Failed to consolidate camera %s", camera_id)
                    report.errors.append(f"{camera_id}: {exc}")
                    self._count_failure(camera_id, "camera")
            if report.chunks or report.errors:
                self._logger.info(
                    "Consolidation pass (%s) finished: %d videos, %d failed chunks",
                    trigger,
                    len(report.videos),
                    len(report.failures),
                )
            return report

    async def _consolidate_camera(
        self,
        camera_id: str,
        report: ConsolidationReport,
        *,
        force: bool,
    ) -> None:
        camera_dir = self.camera_dir(camera_id)
        self._logger.debug("Processing camera directory %s (%s)", camera_id, camera_dir)
        try:
            frames = await asyncio.to_thread(list_camera_frames, camera_dir)
        except OSError as exc:
            self._logger.error("Failed to enumerate frames for %s: %s", camera_id, exc)
            report.errors.append(f"{camera_id}: {exc}")
            report.cameras_skipped.append(camera_id)
            self._count_failure(camera_id, "scan")
            return
        report.cameras_scanned.append(camera_id)

        disposition = self._config.disposition
        mark = self._registry.consolidated_through(camera_id)
        if disposition is not FrameDisposition.DELETE and mark is not None:
            frames = [frame for frame in frames if frame.sequence > mark]
        if not frames:
            return
        if len(frames) < self._config.min_batch_frames and not force:
            self._logger.debug(
                "Skipping %s: %d frames below minimum batch of %d",
                camera_id,
                len(frames),
                self._config.min_batch_frames,
            )
            report.cameras_skipped.append(camera_id)
            return

        chunks = plan_chunks(
            frames,
            chunk_size=self._config.max_frames_per_batch,
            min_frames=self._config.min_batch_frames,
            single=self._config.chunk_policy == "single",
            force=force,
        )
        self._logger.info(
            "Creating video for %s: %d frames in %d chunks", camera_id, len(frames), len(chunks)
        )
        stamp = self._clock()
        blocked = False
        for index, chunk in enumerate(chunks, start=1):
            output = self._artifact_path(camera_id, stamp, index)
            outcome = await self._encode_chunk(camera_id, index, chunk, output)
            report.chunks.append(outcome)
            if not outcome.success:
                blocked = True
                continue
            if disposition is FrameDisposition.DELETE:
                await asyncio.to_thread(self._delete_frames, chunk)
            elif not blocked:
                self._registry.advance_consolidated(camera_id, chunk[-1].sequence)

        new_mark = self._registry.consolidated_through(camera_id)
        if disposition is not FrameDisposition.DELETE and new_mark is not None and new_mark != mark:
            try:
                await asyncio.to_thread(write_consolidated_mark, camera_dir, new_mark)
            except OSError as exc:
                self._logger.error("Failed to store consolidated mark for %s: %s", camera_id, exc)
                report.errors.append(f"{camera_id}: {exc}")

        if disposition is FrameDisposition.RENUMBER and not blocked:
            await asyncio.to_thread(self._renumber_remaining, camera_id)

    async def _encode_chunk(
        self,
        camera_id: str,
        index: int,
        chunk: Sequence[PersistedFrame],
        output: Path,
    ) -> ChunkOutcome:
        outcome = ChunkOutcome(
            camera_id=camera_id,
            index=index,
            frame_count=len(chunk),
            first_sequence=chunk[0].sequence,
            last_sequence=chunk[-1].sequence,
            output=None,
            success=False,
        )
        entries = build_playlist([frame.path for frame in chunk], self._config.frame_rate)
        returncode: int | None = None
        detail = ""
        try:
            result = await asyncio.to_thread(self._encoder.encode, entries, output)
        except EncoderError as exc:
            detail = str(exc)
        except Exception as exc:
            self._logger.exception("Encoder crashed for %s chunk %d", camera_id, index)
            detail = str(exc) or exc.__class__.__name__
        else:
            returncode = result.returncode
            detail = result.stderr

        size = self._artifact_size(output)
        if returncode is None:
            outcome.error = detail or "encoder failed"
        elif size <= 0:
            outcome.error = f"encoder produced no output (exit {returncode})"
            if detail:
                outcome.error += f": {detail}"
        elif returncode != 0 and not self._config.lenient_encoder_success:
            outcome.error = f"encoder exited with {returncode}: {detail}".rstrip(": ")
        else:
            outcome.success = True
            outcome.output = output
            outcome.lenient = returncode != 0

        if not outcome.success:
            self._discard_artifact(output)
            self._logger.error(
                "Failed to create video for %s chunk %d (%d frames): %s",
                camera_id,
                index,
                len(chunk),
                outcome.error,
            )
            self._count_failure(camera_id, "encode")
            if self._event_log is not None:
                self._event_log.record(
                    "consolidation",
                    "chunk_failed",
                    outcome.error or "encoder failed",
                    camera_id=camera_id,
                    metadata={"chunk": index, "frames": len(chunk)},
                )
            return outcome

        if outcome.lenient:
            self._logger.warning(
                "Encoder reported exit %s for %s chunk %d but produced %d bytes; accepting",
                returncode,
                camera_id,
                index,
                size,
            )
        self._registry.record_video(camera_id, self._clock())
        if self._metrics is not None:
            self._metrics.videos_generated.labels(camera=camera_id).inc()
        self._logger.info(
            "Video created: camera=%s path=%s frames=%d", camera_id, output, len(chunk)
        )
        if self._event_log is not None:
            self._event_log.record(
                "consolidation",
                "video_created",
                f"Consolidated {len(chunk)} frames for {camera_id}",
                camera_id=camera_id,
                metadata={
                    "path": str(output),
                    "frames": len(chunk),
                    "size_bytes": size,
                    "lenient": outcome.lenient or None,
                },
            )
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _artifact_path(self, camera_id: str, stamp: datetime, index: int) -> Path:
        base = f"{camera_id}_{format_timestamp(stamp)}"
        name = f"{base}.mp4" if index <= 1 else f"{base}.chunk{index:03d}.mp4"
        path = self.videos_dir / name
        attempt = 1
        while path.exists():
            attempt += 1
            path = self.videos_dir / f"{Path(name).stem}-{attempt}.mp4"
        return path

    @staticmethod
    def _artifact_size(path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError:
            return 0

    def _discard_artifact(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            self._logger.warning("Unable to remove rejected artifact %s: %s", path, exc)

    def _delete_frames(self, frames: Sequence[PersistedFrame]) -> int:
        removed = 0
        for frame in frames:
            try:
                frame.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                self._logger.error("Failed to delete frame %s: %s", frame.path, exc)
                continue
            removed += 1
        return removed

    def _renumber_remaining(self, camera_id: str) -> int:
        mark = self._registry.consolidated_through(camera_id)
        if mark is None:
            return 0
        leftovers = [frame for frame in list_camera_frames(self.camera_dir(camera_id)) if frame.sequence > mark]
        if not leftovers:
            return 0
        try:
            renamed = renumber_frames(leftovers, mark + 1)
        except OSError as exc:
            self._logger.error("Failed to renumber frames for %s: %s", camera_id, exc)
            self._count_failure(camera_id, "renumber")
            return 0
        if renamed:
            self._logger.info("Renumbered %d remaining frames for %s", renamed, camera_id)
        return renamed

    def _count_failure(self, camera_id: str, stage: str) -> None:
        if self._metrics is not None:
            self._metrics.consolidation_failures.labels(camera=camera_id, stage=stage).inc()


__all__ = [
    "ChunkOutcome",
    "ConsolidationEngine",
    "ConsolidationReport",
    "list_camera_frames",
    "plan_chunks",
    "read_consolidated_mark",
    "renumber_frames",
    "write_consolidated_mark",
]
