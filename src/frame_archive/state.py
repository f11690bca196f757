"""Per-camera counters shared between the archive workers."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock


@dataclass(slots=True)
class CameraState:
    """Counters tracked for a single camera."""

    camera_id: str
    active: bool = False
    frames_persisted: int = 0
    last_persisted_at: datetime | None = None
    consolidated_through: int | None = None
    videos_generated: int = 0
    last_video_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "active": self.active,
            "frames_persisted": self.frames_persisted,
            "last_persisted_at": self.last_persisted_at.isoformat() if self.last_persisted_at else None,
            "consolidated_through": self.consolidated_through,
            "videos_generated": self.videos_generated,
            "last_video_at": self.last_video_at.isoformat() if self.last_video_at else None,
        }


class CameraRegistry:
    """Typed registry of :class:`CameraState` guarded by a single lock.

    Callers only ever receive copies; the underlying mapping is private.
    """

    def __init__(self) -> None:
        self._cameras: dict[str, CameraState] = {}
        self._mutex = Lock()

    def _get_locked(self, camera_id: str) -> CameraState:
        state = self._cameras.get(camera_id)
        if state is None:
            state = CameraState(camera_id=camera_id)
            self._cameras[camera_id] = state
        return state

    def mark_active(self, camera_id: str) -> None:
        with self._mutex:
            self._get_locked(camera_id).active = True

    def record_persisted(self, camera_id: str, when: datetime | None = None) -> int:
        """Increment the persisted counter and return the new total."""

        with self._mutex:
            state = self._get_locked(camera_id)
            state.active = True
            state.frames_persisted += 1
            state.last_persisted_at = when or datetime.now(timezone.utc)
            return state.frames_persisted

    def record_video(self, camera_id: str, when: datetime | None = None) -> None:
        with self._mutex:
            state = self._get_locked(camera_id)
            state.videos_generated += 1
            state.last_video_at = when or datetime.now(timezone.utc)

    def advance_consolidated(self, camera_id: str, sequence: int) -> None:
        """Raise the consolidated mark for ``camera_id``; never lowers it."""

        with self._mutex:
            state = self._get_locked(camera_id)
            if state.consolidated_through is None or sequence > state.consolidated_through:
                state.consolidated_through = int(sequence)

    def consolidated_through(self, camera_id: str) -> int | None:
        with self._mutex:
            state = self._cameras.get(camera_id)
            return state.consolidated_through if state is not None else None

    def active_cameras(self) -> list[str]:
        with self._mutex:
            return sorted(camera_id for camera_id, state in self._cameras.items() if state.active)

    def get(self, camera_id: str) -> CameraState | None:
        with self._mutex:
            state = self._cameras.get(camera_id)
            return replace(state) if state is not None else None

    def snapshot(self) -> dict[str, CameraState]:
        with self._mutex:
            return {camera_id: replace(state) for camera_id, state in self._cameras.items()}


__all__ = ["CameraRegistry", "CameraState"]
