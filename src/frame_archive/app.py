"""FastAPI application exposing the frame archive over HTTP."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .archiver import FrameArchiver
from .config import ArchiveConfig, load_config
from .ingest import InvalidSubmission, QueueClosed, QueueFull
from .version import APP_VERSION


class FrameAccepted(BaseModel):
    camera_id: str
    sequence: int
    queue_depth: int


class ConsolidatePayload(BaseModel):
    force: bool = True


class EventEntryModel(BaseModel):
    timestamp: float
    category: str
    event: str
    message: str
    camera_id: str | None = None
    metadata: dict[str, object] | None = None


class EventsResponse(BaseModel):
    entries: list[EventEntryModel] = Field(default_factory=list)


def create_app(
    config: ArchiveConfig | Path | str | None = None,
    *,
    archiver: FrameArchiver | None = None,
) -> FastAPI:
    """Build the HTTP surface around ``archiver`` (created from ``config`` if omitted)."""

    app = FastAPI(title="Frame Archive", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if archiver is None:
        if not isinstance(config, ArchiveConfig):
            config = load_config(config)
        archiver = FrameArchiver(config)
    app.state.archiver = archiver

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        await archiver.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        report = await archiver.stop()
        if report is not None and report.failures:
            logger.warning(
                "Final consolidation left %d chunks unconsolidated", len(report.failures)
            )

    @app.post("/cameras/{camera_id}/frames", status_code=202, response_model=FrameAccepted)
    async def submit_frame(
        camera_id: str,
        request: Request,
        sequence: int = Query(0, ge=0),
        timestamp: datetime | None = None,
    ) -> FrameAccepted:
        payload = await request.body()
        try:
            archiver.submit(camera_id, payload, timestamp=timestamp, sequence=sequence)
        except InvalidSubmission as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except QueueFull as exc:
            raise HTTPException(
                status_code=503,
                detail=str(exc),
                headers={"Retry-After": "1"},
            ) from exc
        except QueueClosed as exc:
            raise HTTPException(status_code=503, detail="Frame archive is shutting down") from exc
        return FrameAccepted(
            camera_id=camera_id,
            sequence=sequence,
            queue_depth=archiver.queue.qsize(),
        )

    @app.get("/status")
    async def get_status() -> dict[str, object]:
        return await run_in_threadpool(archiver.status)

    @app.post("/consolidate")
    async def consolidate(payload: ConsolidatePayload | None = None) -> dict[str, object]:
        force = payload.force if payload is not None else True
        report = await archiver.consolidate_now(force=force)
        return report.to_dict()

    @app.post("/retention/sweep")
    async def retention_sweep() -> dict[str, object]:
        report = await archiver.sweep_now()
        return report.to_dict()

    @app.get("/events", response_model=EventsResponse)
    async def get_events(
        limit: int | None = Query(None, ge=1),
        category: str | None = None,
        camera_id: str | None = None,
    ) -> EventsResponse:
        entries = archiver.event_log.tail(limit, category=category, camera_id=camera_id)
        return EventsResponse(entries=[EventEntryModel(**entry.to_dict()) for entry in entries])

    @app.get("/metrics")
    async def metrics() -> Response:
        payload, content_type = archiver.metrics.render()
        return Response(content=payload, media_type=content_type)

    return app


__all__ = ["create_app"]
