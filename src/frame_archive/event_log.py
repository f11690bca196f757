"""Pipeline event history kept alongside the frame store."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Mapping

DEFAULT_CATEGORY = "general"


def _clean_category(value: object) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return DEFAULT_CATEGORY


@dataclass(frozen=True, slots=True)
class EventLogEntry:
    """One archive event: a rejected frame, a video, a sweep or a lifecycle step."""

    timestamp: float
    category: str
    event: str
    message: str
    camera_id: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.camera_id is not None:
            payload["camera_id"] = self.camera_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EventLogEntry":
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            raise ValueError("Event entries need string 'event' and 'message' fields")
        camera_id = payload.get("camera_id")
        metadata = payload.get("metadata")
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Event entry timestamp must be numeric") from exc
        return cls(
            timestamp=timestamp,
            category=_clean_category(payload.get("category")),
            event=event,
            message=message,
            camera_id=camera_id if isinstance(camera_id, str) else None,
            metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
        )


class EventLog:
    """Recent archive events, optionally mirrored to a JSON-lines file.

    Memory holds the newest ``max_entries`` events. When a file is configured
    every event is appended to it, and once the file carries twice that many
    lines it is rewritten with only the entries still held in memory. Every
    event is also emitted on the logger at ``DEBUG``.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._max_entries = int(max_entries)
        self._entries: Deque[EventLogEntry] = deque(maxlen=self._max_entries)
        self._lock = threading.Lock()
        self._path: Path | None = None
        self._file_lines = 0
        if path is not None:
            self._open(Path(path))

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        camera_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> EventLogEntry:
        """Store an event and return it; ``None`` metadata values are dropped."""

        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = EventLogEntry(
            timestamp=time.time(),
            category=_clean_category(category),
            event=event,
            message=message,
            camera_id=camera_id,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            if self._path is not None:
                self._write(self._path, entry)
        if camera_id is not None:
            self._logger.debug("[%s] %s (%s): %s", entry.category, event, camera_id, message)
        else:
            self._logger.debug("[%s] %s: %s", entry.category, event, message)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        camera_id: str | None = None,
    ) -> list[EventLogEntry]:
        """Return the newest entries, oldest first, optionally filtered."""

        with self._lock:
            entries = list(self._entries)
        if category is not None and category.strip():
            wanted = _clean_category(category)
            entries = [entry for entry in entries if entry.category == wanted]
        if camera_id is not None:
            entries = [entry for entry in entries if entry.camera_id == camera_id]
        if limit is not None:
            entries = entries[-max(1, int(limit)):]
        return entries

    def _open(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._logger.warning("Event log %s unavailable, keeping events in memory: %s", path, exc)
            return
        self._path = path
        if not path.exists():
            return
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            self._logger.warning("Unable to load event log %s: %s", path, exc)
            return
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            self._file_lines += 1
            try:
                self._entries.append(EventLogEntry.from_dict(json.loads(line)))
            except (ValueError, AttributeError):
                skipped += 1
        if skipped:
            self._logger.warning("Skipped %d malformed lines in event log %s", skipped, path)

    def _write(self, path: Path, entry: EventLogEntry) -> None:
        line = json.dumps(entry.to_dict(), separators=(",", ":"), default=str)
        try:
            if self._file_lines + 1 > 2 * self._max_entries:
                self._compact(path)
                return
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            self._file_lines += 1
        except OSError as exc:
            self._logger.warning("Unable to write event log %s: %s", path, exc)

    def _compact(self, path: Path) -> None:
        temp_path = path.with_name(f".{path.name}.tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            for entry in self._entries:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        os.replace(temp_path, path)
        self._file_lines = len(self._entries)


__all__ = ["DEFAULT_CATEGORY", "EventLog", "EventLogEntry"]
