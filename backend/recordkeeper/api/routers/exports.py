"""Export endpoints: the owner's records in the current envelope."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from recordkeeper.api.dependencies.auth import get_owner_id
from recordkeeper.api.dependencies.db import get_session
from recordkeeper.api.dependencies.progress import get_publisher
from recordkeeper.api.routers.import_helpers import stream_channel
from recordkeeper.api.schemas.progress import ProgressAccepted
from recordkeeper.core.config import Settings, get_settings
from recordkeeper.core.exceptions import ExportError
from recordkeeper.db.session import get_session_factory
from recordkeeper.services.export_streamer import ExportStreamer
from recordkeeper.services.jobs import run_export_job
from recordkeeper.services.progress_publisher import ProgressPublisher

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get(
    "",
    summary="Export all records of the caller",
    response_model=None,
)
async def export_records(
    background_tasks: BackgroundTasks,
    progress: bool = Query(False, description="Assemble in the background and report progress over SSE"),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    factory: sessionmaker[Session] = Depends(get_session_factory),
    publisher: ProgressPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any] | JSONResponse:
    """Return the v2 envelope, or a 202 with a progress channel whose final event carries it."""
    if progress:
        channel_id = publisher.create_channel(owner_id)
        background_tasks.add_task(run_export_job, factory, publisher, channel_id, owner_id, settings)
        accepted = ProgressAccepted(
            progress_channel_id=channel_id,
            progress_url=f"/api/export/progress/{channel_id}",
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.to_wire())

    streamer = ExportStreamer(db, chunk_size=settings.export_chunk_size)
    try:
        envelope = await streamer.export(owner_id)
    except ExportError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": str(e)},
        )
    return envelope.to_wire()


@router.get(
    "/progress/{channel_id}",
    summary="Server-Sent Events stream for export progress",
)
async def stream_export_progress(
    channel_id: str,
    owner_id: str = Depends(get_owner_id),
    publisher: ProgressPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    return stream_channel(publisher, channel_id, owner_id, settings.progress_heartbeat_seconds)
