"""Configuration for the frame archive pipeline."""

from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .frames import VIDEOS_DIRNAME

OUTPUT_DIR_ENV = "FRAME_ARCHIVE_OUTPUT_DIR"

CHUNK_POLICIES: tuple[str, ...] = ("fixed", "single")
ENCODER_BACKENDS: tuple[str, ...] = ("ffmpeg", "pyav")


class FrameDisposition(str, Enum):
    """What happens to frame files once they are part of a video.

    ``KEEP`` and ``RENUMBER`` leave frames in place. The highest consolidated
    sequence is stored in each camera directory and read back on start, so
    a restart does not encode the same frames again.
    """

    DELETE = "delete"
    KEEP = "keep"
    RENUMBER = "renumber"


def _positive_seconds(name: str, value: Any) -> float:
    try:
        value_f = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(value_f) or value_f <= 0:
        raise ValueError(f"{name} must be a positive number of seconds")
    return value_f


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        value_i = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value_i != value or value_i <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return value_i


@dataclass(frozen=True, slots=True)
class ArchiveConfig:
    """Validated settings consumed by the archive workers."""

    output_dir: Path = Path("data/frames")
    max_frames_per_batch: int = 30
    min_batch_frames: int = 1
    chunk_policy: str = "fixed"
    retention_window: float = 24 * 60 * 60.0
    retention_sweep_interval: float = 300.0
    max_frame_storage_bytes: int | None = None
    queue_capacity: int = 100
    consolidation_interval: float = 10.0
    delete_after_consolidation: bool = True
    renumber_remaining: bool = False
    frame_rate: int = 30
    jpeg_quality: int = 90
    encoder_backend: str = "ffmpeg"
    encoder_binary: str = "ffmpeg"
    encoder_codec: str = "libx264"
    encoder_timeout: float = 300.0
    lenient_encoder_success: bool = True
    shutdown_timeout: float = 10.0
    consolidation_enabled: bool = True
    event_log_path: Path | None = None
    event_log_entries: int = 500

    def __post_init__(self) -> None:
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        if self.event_log_path is not None:
            if not str(self.event_log_path).strip():
                raise ValueError("event_log_path must not be empty")
            object.__setattr__(self, "event_log_path", Path(self.event_log_path))
        for name in (
            "max_frames_per_batch",
            "min_batch_frames",
            "queue_capacity",
            "frame_rate",
            "event_log_entries",
        ):
            object.__setattr__(self, name, _positive_int(name, getattr(self, name)))
        for name in (
            "retention_window",
            "retention_sweep_interval",
            "consolidation_interval",
            "encoder_timeout",
            "shutdown_timeout",
        ):
            object.__setattr__(self, name, _positive_seconds(name, getattr(self, name)))
        if self.min_batch_frames > self.max_frames_per_batch:
            raise ValueError("min_batch_frames cannot exceed max_frames_per_batch")
        if self.frame_rate > 240:
            raise ValueError("frame_rate must be between 1 and 240")
        if self.max_frame_storage_bytes is not None:
            object.__setattr__(
                self,
                "max_frame_storage_bytes",
                _positive_int("max_frame_storage_bytes", self.max_frame_storage_bytes),
            )
        quality = int(self.jpeg_quality)
        if quality < 1 or quality > 100:
            raise ValueError("jpeg_quality must be between 1 and 100")
        object.__setattr__(self, "jpeg_quality", quality)
        policy = str(self.chunk_policy).strip().lower()
        if policy not in CHUNK_POLICIES:
            raise ValueError(f"chunk_policy must be one of {', '.join(CHUNK_POLICIES)}")
        object.__setattr__(self, "chunk_policy", policy)
        backend = str(self.encoder_backend).strip().lower()
        if backend not in ENCODER_BACKENDS:
            raise ValueError(f"encoder_backend must be one of {', '.join(ENCODER_BACKENDS)}")
        object.__setattr__(self, "encoder_backend", backend)
        if not str(self.encoder_binary).strip():
            raise ValueError("encoder_binary must not be empty")
        if not str(self.encoder_codec).strip():
            raise ValueError("encoder_codec must not be empty")
        object.__setattr__(self, "delete_after_consolidation", bool(self.delete_after_consolidation))
        object.__setattr__(self, "renumber_remaining", bool(self.renumber_remaining))
        object.__setattr__(self, "lenient_encoder_success", bool(self.lenient_encoder_success))
        object.__setattr__(self, "consolidation_enabled", bool(self.consolidation_enabled))
        if self.delete_after_consolidation and self.renumber_remaining:
            raise ValueError(
                "delete_after_consolidation and renumber_remaining are mutually exclusive; "
                "choose one frame disposition"
            )

    @property
    def disposition(self) -> FrameDisposition:
        if self.delete_after_consolidation:
            return FrameDisposition.DELETE
        if self.renumber_remaining:
            return FrameDisposition.RENUMBER
        return FrameDisposition.KEEP

    @property
    def videos_dir(self) -> Path:
        return self.output_dir / VIDEOS_DIRNAME

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["output_dir"] = str(self.output_dir)
        data["event_log_path"] = str(self.event_log_path) if self.event_log_path is not None else None
        data["disposition"] = self.disposition.value
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ArchiveConfig":
        known = {item.name for item in fields(cls)}
        data: dict[str, Any] = dict(payload)
        # to_dict() output is accepted as input.
        data.pop("disposition", None)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(path: Path | str | None = None) -> ArchiveConfig:
    """Load configuration from a JSON file and the environment.

    A missing file yields the defaults. ``FRAME_ARCHIVE_OUTPUT_DIR`` overrides
    ``output_dir`` when set.
    """

    payload: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                raw = json.loads(config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid configuration JSON in {config_path}") from exc
            if not isinstance(raw, Mapping):
                raise ValueError("Configuration file must contain a JSON object")
            payload.update(raw)
    env_dir = os.environ.get(OUTPUT_DIR_ENV)
    if env_dir:
        payload["output_dir"] = env_dir
    return ArchiveConfig.from_dict(payload)


__all__ = [
    "ArchiveConfig",
    "CHUNK_POLICIES",
    "ENCODER_BACKENDS",
    "FrameDisposition",
    "OUTPUT_DIR_ENV",
    "load_config",
]
