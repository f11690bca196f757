from __future__ import annotations

import base64
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest
import simplejpeg

from conftest import make_jpeg
from frame_archive.frames import (
    FrameSubmission,
    FrameValidationError,
    decode_payload,
    format_timestamp,
    frame_filename,
    looks_like_base64,
    normalise_frame,
    parse_frame_path,
    sort_frames,
    with_sequence,
)


def test_frame_filename_pads_sequence_and_keeps_milliseconds() -> None:
    stamp = datetime(2024, 3, 5, 14, 30, 15, 123456, tzinfo=timezone.utc)
    assert format_timestamp(stamp) == "20240305_143015.123"
    assert frame_filename(42, stamp) == "frame_0000000042_20240305_143015.123.jpg"


def test_parse_frame_path_round_trips_generated_names(tmp_path: Path) -> None:
    stamp = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    path = tmp_path / "cam1" / frame_filename(7, stamp)
    parsed = parse_frame_path(path)
    assert parsed is not None
    assert parsed.camera_id == "cam1"
    assert parsed.sequence == 7
    assert parsed.timestamp == stamp


def test_parse_frame_path_accepts_unpadded_and_rejects_foreign(tmp_path: Path) -> None:
    assert parse_frame_path(tmp_path / "frame_9.jpg").sequence == 9
    assert parse_frame_path(tmp_path / "frame_12_20240101_000000.jpg").sequence == 12
    assert parse_frame_path(tmp_path / "thumbnail.jpg") is None
    assert parse_frame_path(tmp_path / "frame_abc.jpg") is None
    assert parse_frame_path(tmp_path / ".frame_1.jpg.tmp") is None


def test_sort_frames_is_numeric_not_lexicographic(tmp_path: Path) -> None:
    names = ["frame_10.jpg", "frame_9.jpg", "frame_100.jpg", "frame_2.jpg"]
    frames = [parse_frame_path(tmp_path / name) for name in names]
    ordered = [frame.sequence for frame in sort_frames(frames)]
    assert ordered == [2, 9, 10, 100]


def test_with_sequence_preserves_timestamp() -> None:
    name = "frame_0000000012_20240101_000000.250.jpg"
    assert with_sequence(name, 3) == "frame_0000000003_20240101_000000.250.jpg"
    with pytest.raises(ValueError):
        with_sequence("other.jpg", 1)


def test_submission_normalises_timestamp_and_rejects_negative_sequence() -> None:
    naive = datetime(2024, 1, 1, 12, 0, 0)
    frame = FrameSubmission(camera_id="cam", payload=b"x", timestamp=naive, sequence=3)
    assert frame.timestamp.tzinfo is timezone.utc
    with pytest.raises(ValueError):
        FrameSubmission(camera_id="cam", payload=b"x", sequence=-1)


def test_submission_rejects_fractional_and_non_numeric_sequence() -> None:
    with pytest.raises(ValueError):
        FrameSubmission(camera_id="cam", payload=b"x", sequence=1.5)
    with pytest.raises(ValueError):
        FrameSubmission(camera_id="cam", payload=b"x", sequence="seven")
    with pytest.raises(ValueError):
        FrameSubmission(camera_id="cam", payload=b"x", sequence=True)
    assert FrameSubmission(camera_id="cam", payload=b"x", sequence=4.0).sequence == 4


def test_base64_detection_ignores_raw_jpeg() -> None:
    jpeg = make_jpeg()
    encoded = base64.b64encode(jpeg)
    assert looks_like_base64(encoded)
    assert not looks_like_base64(jpeg)
    assert not looks_like_base64(b"abc")
    assert decode_payload(encoded) == jpeg
    assert decode_payload(jpeg) == jpeg


def test_normalise_frame_accepts_base64_and_preserves_pixels() -> None:
    jpeg = make_jpeg(width=24, height=10)
    result = normalise_frame(base64.b64encode(jpeg), quality=90)
    decoded = simplejpeg.decode_jpeg(result, colorspace="RGB").astype(int)
    source = simplejpeg.decode_jpeg(jpeg, colorspace="RGB").astype(int)
    assert decoded.shape == source.shape == (10, 24, 3)
    assert np.abs(decoded - source).mean() < 5


def test_normalise_frame_rejects_non_jpeg() -> None:
    with pytest.raises(FrameValidationError):
        normalise_frame(b"not an image at all")
    with pytest.raises(FrameValidationError):
        normalise_frame(b"\xff\xd8\x00\x01garbage")
