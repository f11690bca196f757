from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np
import pytest
import simplejpeg

from frame_archive.encoding import EncodeResult, EncoderError, PlaylistEntry
from frame_archive.frames import parse_frame_path


def make_jpeg(width: int = 16, height: int = 8, value: int = 128) -> bytes:
    image = np.full((height, width, 3), value, dtype=np.uint8)
    image[:, : width // 2, 0] = 255
    return simplejpeg.encode_jpeg(image, quality=95, colorspace="RGB")


class FakeEncoder:
    """Records invocations and writes a stand-in artifact."""

    name = "fake"

    def __init__(
        self,
        *,
        returncode: int = 0,
        content: bytes = b"fake-mp4",
        fail_for: Sequence[str] = (),
        error: Exception | None = None,
    ) -> None:
        self.returncode = returncode
        self.content = content
        self.fail_for = set(fail_for)
        self.error = error
        self.calls: list[tuple[list[PlaylistEntry], Path]] = []

    def encode(self, entries: Sequence[PlaylistEntry], output: Path) -> EncodeResult:
        self.calls.append((list(entries), output))
        if self.error is not None:
            raise self.error
        if any(entry.path.parent.name in self.fail_for for entry in entries):
            raise EncoderError("simulated encoder failure")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(self.content)
        return EncodeResult(output=output, returncode=self.returncode, stderr="")

    def sequences(self, call: int = 0) -> list[int]:
        entries, _ = self.calls[call]
        return [parse_frame_path(entry.path).sequence for entry in entries]


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_jpeg()


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()
