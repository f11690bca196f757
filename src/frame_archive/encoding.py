"""Encoder backends turning an ordered frame list into a video file."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Protocol, Sequence

import av
import numpy as np
import simplejpeg

from .config import ArchiveConfig

logger = logging.getLogger(__name__)

PLAYLIST_HEADER = "ffconcat version 1.0"


class EncoderError(RuntimeError):
    """Raised when the encoder could not be run or produced nothing usable."""


@dataclass(frozen=True, slots=True)
class PlaylistEntry:
    """One frame reference with its display duration in seconds."""

    path: Path
    duration: float


@dataclass(frozen=True, slots=True)
class EncodeResult:
    """Outcome of a single encoder invocation."""

    output: Path
    returncode: int
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


def _quote_path(path: Path) -> str:
    text = Path(path).absolute().as_posix()
    if "\n" in text or "\r" in text:
        raise ValueError(f"Frame path contains a line break: {text!r}")
    return "'" + text.replace("'", "'\\''") + "'"


def _format_duration(value: float) -> str:
    if value <= 0:
        raise ValueError("Playlist durations must be positive")
    return f"{value:.6f}"


def render_playlist(entries: Sequence[PlaylistEntry]) -> str:
    """Serialise ``entries`` as an ffconcat playlist.

    Paths are absolute, use forward slashes and sit in single quotes with
    embedded quotes written as ``'\\''``. The final frame is listed a second
    time without a duration so the concat demuxer honours the last duration.
    """

    if not entries:
        raise ValueError("A playlist needs at least one frame")
    lines = [PLAYLIST_HEADER]
    for entry in entries:
        lines.append(f"file {_quote_path(entry.path)}")
        lines.append(f"duration {_format_duration(entry.duration)}")
    lines.append(f"file {_quote_path(entries[-1].path)}")
    return "\n".join(lines) + "\n"


def build_playlist(frame_paths: Sequence[Path], frame_rate: int) -> list[PlaylistEntry]:
    if frame_rate <= 0:
        raise ValueError("frame_rate must be positive")
    duration = 1.0 / float(frame_rate)
    return [PlaylistEntry(path=Path(path), duration=duration) for path in frame_paths]


class FrameEncoder(Protocol):
    """Interface implemented by encoder backends."""

    name: str

    def encode(self, entries: Sequence[PlaylistEntry], output: Path) -> EncodeResult:
        ...


class FfmpegEncoder:
    """Run the external ``ffmpeg`` binary with the concat demuxer."""

    name = "ffmpeg"

    def __init__(
        self,
        *,
        binary: str = "ffmpeg",
        codec: str = "libx264",
        frame_rate: int = 30,
        timeout: float = 300.0,
    ) -> None:
        self._binary = binary
        self._codec = codec
        self._frame_rate = int(frame_rate)
        self._timeout = float(timeout)

    @property
    def binary(self) -> str:
        return self._binary

    def is_available(self) -> bool:
        return shutil.which(self._binary) is not None

    def build_command(self, playlist: Path, output: Path) -> list[str]:
        command = [
            self._binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(playlist),
            "-vf",
            "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-r",
            str(self._frame_rate),
            "-c:v",
            self._codec,
        ]
        if self._codec in {"libx264", "libx265"}:
            command += ["-preset", "ultrafast"]
        command += ["-pix_fmt", "yuv420p", str(output)]
        return command

    def encode(self, entries: Sequence[PlaylistEntry], output: Path) -> EncodeResult:
        output.parent.mkdir(parents=True, exist_ok=True)
        playlist = output.with_name(f".{output.stem}.ffconcat")
        playlist.write_text(render_playlist(entries), encoding="utf-8")
        try:
            completed = subprocess.run(
                self.build_command(playlist, output),
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise EncoderError(f"{self._binary} not found in PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise EncoderError(f"{self._binary} timed out after {self._timeout:.0f}s") from exc
        finally:
            try:
                playlist.unlink()
            except FileNotFoundError:
                pass
        stderr = (completed.stderr or "").strip()
        if completed.returncode != 0:
            logger.debug("ffmpeg exited with %s: %s", completed.returncode, stderr)
        return EncodeResult(output=output, returncode=completed.returncode, stderr=stderr)


def _codec_candidates(codec: str) -> list[str]:
    codec = codec.lower()
    if codec in {"h264", "libx264"}:
        return ["libx264", "h264", "mpeg4"]
    if codec in {"hevc", "h265", "libx265"}:
        return ["libx265", "hevc", "libx264", "h264", "mpeg4"]
    return [codec, "libx264", "h264", "mpeg4"]


def _even_rgb(array: np.ndarray) -> np.ndarray:
    height, width = array.shape[:2]
    array = array[: height - (height % 2), : width - (width % 2), :3]
    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)
    return array


class PyAVEncoder:
    """Encode frames in-process with PyAV when no ffmpeg binary is installed."""

    name = "pyav"

    def __init__(self, *, codec: str = "libx264", frame_rate: int = 30) -> None:
        self._codec = codec
        self._frame_rate = int(frame_rate)

    def _open_stream(self, container, width: int, height: int):
        for candidate in _codec_candidates(self._codec):
            try:
                stream = container.add_stream(candidate, rate=self._frame_rate)
            except (av.FFmpegError, ValueError):
                continue
            stream.width = width
            stream.height = height
            stream.pix_fmt = "yuv420p"
            stream.time_base = Fraction(1, self._frame_rate)
            return stream
        raise EncoderError(f"No compatible encoder available for {self._codec!r}")

    def encode(self, entries: Sequence[PlaylistEntry], output: Path) -> EncodeResult:
        if not entries:
            raise EncoderError("No frames to encode")
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            container = av.open(output.as_posix(), mode="w")
        except av.FFmpegError as exc:
            raise EncoderError(f"Failed to open {output}: {exc}") from exc
        stream = None
        encoded = 0
        try:
            for index, entry in enumerate(entries):
                try:
                    rgb = simplejpeg.decode_jpeg(entry.path.read_bytes(), colorspace="RGB")
                except (OSError, ValueError) as exc:
                    logger.warning("Skipping unreadable frame %s: %s", entry.path, exc)
                    continue
                rgb = _even_rgb(rgb)
                if rgb.shape[0] == 0 or rgb.shape[1] == 0:
                    continue
                if stream is None:
                    stream = self._open_stream(container, rgb.shape[1], rgb.shape[0])
                frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
                if frame.width != stream.width or frame.height != stream.height:
                    frame = frame.reformat(width=stream.width, height=stream.height)
                frame.pts = index
                for packet in stream.encode(frame):
                    container.mux(packet)
                encoded += 1
            if stream is not None:
                for packet in stream.encode():
                    container.mux(packet)
        except av.FFmpegError as exc:
            raise EncoderError(f"PyAV encoding failed: {exc}") from exc
        finally:
            container.close()
        if encoded == 0:
            raise EncoderError("None of the frames could be decoded")
        return EncodeResult(output=output, returncode=0)


def create_encoder(config: ArchiveConfig) -> FrameEncoder:
    """Return the encoder backend selected by ``config``."""

    if config.encoder_backend == "pyav":
        return PyAVEncoder(codec=config.encoder_codec, frame_rate=config.frame_rate)
    encoder = FfmpegEncoder(
        binary=config.encoder_binary,
        codec=config.encoder_codec,
        frame_rate=config.frame_rate,
        timeout=config.encoder_timeout,
    )
    if not encoder.is_available():
        logger.warning(
            "%s not found in PATH; consolidation will fail until it is installed",
            config.encoder_binary,
        )
    return encoder


__all__ = [
    "EncodeResult",
    "EncoderError",
    "FfmpegEncoder",
    "FrameEncoder",
    "PLAYLIST_HEADER",
    "PlaylistEntry",
    "PyAVEncoder",
    "build_playlist",
    "create_encoder",
    "render_playlist",
]
