"""Frame payload validation and on-disk frame naming."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import simplejpeg

FRAME_GLOB = "frame_*.jpg"
VIDEOS_DIRNAME = "videos"
MARK_FILENAME = ".consolidated"
SEQUENCE_WIDTH = 10
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_JPEG_MAGIC = b"\xff\xd8"
_BASE64_ALPHABET = re.compile(rb"^[A-Za-z0-9+/]+={0,2}$")
_FRAME_NAME = re.compile(
    r"^frame_(?P<sequence>\d+)(?:_(?P<stamp>\d{8}_\d{6})(?:\.(?P<fraction>\d{1,6}))?)?\.jpg$"
)


class FrameValidationError(ValueError):
    """Raised when a frame payload cannot be turned into a JPEG file."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class FrameSubmission:
    """A frame handed over by the transport layer."""

    camera_id: str
    payload: bytes
    timestamp: datetime = field(default_factory=_utcnow)
    sequence: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))
        if isinstance(self.sequence, bool):
            raise ValueError("Frame sequence must be a non-negative integer")
        try:
            sequence = int(self.sequence)
        except (TypeError, ValueError) as exc:
            raise ValueError("Frame sequence must be a non-negative integer") from exc
        if sequence != self.sequence or sequence < 0:
            raise ValueError("Frame sequence must be a non-negative integer")
        object.__setattr__(self, "sequence", sequence)


@dataclass(frozen=True, slots=True)
class PersistedFrame:
    """A frame file found in a camera's store."""

    path: Path
    camera_id: str
    sequence: int
    timestamp: datetime | None

    def sort_key(self) -> tuple[int, datetime, str]:
        stamp = self.timestamp or datetime.min.replace(tzinfo=timezone.utc)
        return (self.sequence, stamp, self.path.name)


def looks_like_base64(data: bytes) -> bool:
    """Return ``True`` when ``data`` is plausibly base64 text.

    The alphabet and the length (a multiple of four) are checked before a
    strict decode is attempted.
    """

    if not data or len(data) % 4:
        return False
    if data.startswith(_JPEG_MAGIC):
        return False
    if not _BASE64_ALPHABET.match(data):
        return False
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def decode_payload(payload: bytes) -> bytes:
    """Return raw image bytes, decoding base64 text when detected."""

    if isinstance(payload, str):
        payload = payload.encode("ascii", errors="ignore")
    data = bytes(payload)
    candidate = data.strip()
    if looks_like_base64(candidate):
        return base64.b64decode(candidate, validate=True)
    return data


def validate_jpeg(data: bytes) -> np.ndarray:
    """Decode ``data`` as a JPEG and return the RGB pixel array."""

    if not data:
        raise FrameValidationError("Frame payload is empty")
    if not data.startswith(_JPEG_MAGIC):
        raise FrameValidationError("Frame payload is not a JPEG image")
    try:
        image = simplejpeg.decode_jpeg(data, colorspace="RGB")
    except Exception as exc:
        raise FrameValidationError(f"Failed to decode JPEG frame: {exc}") from exc
    if image.ndim != 3 or image.shape[0] == 0 or image.shape[1] == 0:
        raise FrameValidationError("Decoded frame has no pixels")
    return image


def normalise_frame(payload: bytes, *, quality: int = 90) -> bytes:
    """Decode, validate and re-encode a submitted frame as JPEG."""

    image = validate_jpeg(decode_payload(payload))
    if not image.flags["C_CONTIGUOUS"]:
        image = np.ascontiguousarray(image)
    return simplejpeg.encode_jpeg(image, quality=int(quality), colorspace="RGB")


def format_timestamp(value: datetime) -> str:
    stamp = _as_utc(value)
    return f"{stamp.strftime(TIMESTAMP_FORMAT)}.{stamp.microsecond // 1000:03d}"


def frame_filename(sequence: int, timestamp: datetime) -> str:
    """Return the file name for a frame; sequence is zero-padded."""

    return f"frame_{int(sequence):0{SEQUENCE_WIDTH}d}_{format_timestamp(timestamp)}.jpg"


def with_sequence(name: str, sequence: int) -> str:
    """Return ``name`` with its sequence field replaced, keeping the timestamp."""

    match = _FRAME_NAME.match(name)
    if match is None:
        raise ValueError(f"Not a frame file name: {name!r}")
    suffix = name[match.end("sequence"):]
    return f"frame_{int(sequence):0{SEQUENCE_WIDTH}d}{suffix}"


def parse_frame_path(path: Path, camera_id: str | None = None) -> PersistedFrame | None:
    """Parse a frame path; ``None`` when the name does not follow the scheme.

    Sequence numbers of any digit width are accepted.
    """

    match = _FRAME_NAME.match(path.name)
    if match is None:
        return None
    timestamp: datetime | None = None
    stamp = match.group("stamp")
    if stamp:
        try:
            timestamp = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            timestamp = None
        fraction = match.group("fraction")
        if timestamp is not None and fraction:
            timestamp = timestamp.replace(microsecond=int(fraction.ljust(6, "0")))
    return PersistedFrame(
        path=path,
        camera_id=camera_id if camera_id is not None else path.parent.name,
        sequence=int(match.group("sequence")),
        timestamp=timestamp,
    )


def sort_frames(frames: list[PersistedFrame]) -> list[PersistedFrame]:
    """Order frames by their numeric sequence, never by file name."""

    return sorted(frames, key=PersistedFrame.sort_key)


__all__ = [
    "FRAME_GLOB",
    "MARK_FILENAME",
    "VIDEOS_DIRNAME",
    "FrameSubmission",
    "FrameValidationError",
    "PersistedFrame",
    "decode_payload",
    "format_timestamp",
    "frame_filename",
    "looks_like_base64",
    "normalise_frame",
    "parse_frame_path",
    "sort_frames",
    "validate_jpeg",
    "with_sequence",
]
