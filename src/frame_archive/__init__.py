"""Frame Archive: per-camera frame ingestion and video consolidation."""

from typing import Any

from .archiver import FrameArchiver
from .config import ArchiveConfig, FrameDisposition, load_config
from .ingest import InvalidSubmission, QueueClosed, QueueFull
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "ArchiveConfig",
    "FrameArchiver",
    "FrameDisposition",
    "InvalidSubmission",
    "QueueClosed",
    "QueueFull",
    "create_app",
    "load_config",
]
