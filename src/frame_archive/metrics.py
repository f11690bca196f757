"""Prometheus counters for the archive pipeline."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PREFIX = "frame_archive"


def _sum_samples(metric, suffix: str) -> float:
    total = 0.0
    for family in metric.collect():
        for sample in family.samples:
            if sample.name.endswith(suffix):
                total += float(sample.value)
    return total


class ArchiveMetrics:
    """Collectors bound to one :class:`CollectorRegistry`.

    Each archiver owns its own registry by default so several instances (and
    tests) never clash on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.submissions_accepted = Counter(
            f"{_PREFIX}_submissions_accepted_total",
            "Frame submissions accepted into the ingestion queue",
            registry=self.registry,
        )
        self.submissions_rejected = Counter(
            f"{_PREFIX}_submissions_rejected_total",
            "Frame submissions rejected at the ingestion queue",
            ["reason"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            f"{_PREFIX}_queue_depth",
            "Frames waiting in the ingestion queue",
            registry=self.registry,
        )
        self.frames_persisted = Counter(
            f"{_PREFIX}_frames_persisted_total",
            "Frames written to camera stores",
            ["camera"],
            registry=self.registry,
        )
        self.frame_errors = Counter(
            f"{_PREFIX}_frame_errors_total",
            "Frames that failed to persist",
            ["stage"],
            registry=self.registry,
        )
        self.persist_latency = Histogram(
            f"{_PREFIX}_persist_latency_seconds",
            "Time spent validating and writing one frame",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
            registry=self.registry,
        )
        self.videos_generated = Counter(
            f"{_PREFIX}_videos_generated_total",
            "Video artifacts produced by consolidation",
            ["camera"],
            registry=self.registry,
        )
        self.consolidation_failures = Counter(
            f"{_PREFIX}_consolidation_failures_total",
            "Consolidation chunks or camera scans that failed",
            ["camera", "stage"],
            registry=self.registry,
        )
        self.consolidation_passes = Counter(
            f"{_PREFIX}_consolidation_passes_total",
            "Consolidation passes run",
            ["trigger"],
            registry=self.registry,
        )
        self.frames_expired = Counter(
            f"{_PREFIX}_frames_expired_total",
            "Frame files removed by the retention sweeper",
            registry=self.registry,
        )
        self.retention_bytes_freed = Counter(
            f"{_PREFIX}_retention_bytes_freed_total",
            "Bytes released by the retention sweeper",
            registry=self.registry,
        )

    def snapshot(self) -> dict[str, float]:
        """Return aggregate values as plain numbers for status reporting."""

        persisted_count = _sum_samples(self.persist_latency, "_count")
        persisted_sum = _sum_samples(self.persist_latency, "_sum")
        return {
            "submissions_accepted": _sum_samples(self.submissions_accepted, "_total"),
            "submissions_rejected": _sum_samples(self.submissions_rejected, "_total"),
            "queue_depth": _sum_samples(self.queue_depth, "queue_depth"),
            "frames_persisted": _sum_samples(self.frames_persisted, "_total"),
            "frame_errors": _sum_samples(self.frame_errors, "_total"),
            "videos_generated": _sum_samples(self.videos_generated, "_total"),
            "consolidation_failures": _sum_samples(self.consolidation_failures, "_total"),
            "consolidation_passes": _sum_samples(self.consolidation_passes, "_total"),
            "frames_expired": _sum_samples(self.frames_expired, "_total"),
            "retention_bytes_freed": _sum_samples(self.retention_bytes_freed, "_total"),
            "average_persist_ms": (persisted_sum / persisted_count * 1000.0) if persisted_count else 0.0,
        }

    def render(self) -> tuple[bytes, str]:
        """Return the Prometheus exposition payload and its content type."""

        return generate_latest(self.registry), CONTENT_TYPE_LATEST


__all__ = ["ArchiveMetrics"]
