"""Shared helpers for shaping import responses and progress streams."""

from __future__ import annotations

from fastapi import HTTPException, status
from fastapi.responses import StreamingResponse

from recordkeeper.api.schemas.imports import ImportSessionStatus
from recordkeeper.core.exceptions import ProgressChannelForbidden, ProgressChannelNotFound
from recordkeeper.db.models.import_session import ImportSession
from recordkeeper.services.import_sessions import ImportSessionStore
from recordkeeper.services.progress_publisher import ProgressPublisher
from recordkeeper.services.repair_advisor import generate_repair_suggestions
from recordkeeper.utils.payload_validator import PayloadValidationError
from recordkeeper.utils.sse import frame_updates, sse_response
from recordkeeper.utils.timestamps import ensure_utc


def serialize_session(session: ImportSession, store: ImportSessionStore) -> ImportSessionStatus:
    """Combine the stored session with its derived summary and resumability."""
    can_resume = store.can_resume(session.session_id)
    last_index = session.last_processed_index
    return ImportSessionStatus(
        session_id=session.session_id,
        status=session.status,
        total_records=session.total_records,
        processed_records=session.processed_records,
        imported_records=session.imported_records,
        skipped_records=session.skipped_records,
        failed_records=session.failed_records,
        last_processed_index=-1 if last_index is None else last_index,
        can_resume=can_resume,
        created_at=ensure_utc(session.created_at),
        updated_at=ensure_utc(session.updated_at),
        error_summary=store.error_summary(session.session_id),
        repair_suggestions=generate_repair_suggestions(store.errors(session)),
        resume_info=store.resume_info(session.session_id) if can_resume else None,
    )


def validation_error_detail(exc: PayloadValidationError) -> dict:
    return {
        "error": "Invalid import payload",
        "field": exc.field,
        "message": str(exc),
        "details": [{"field": path, "message": message} for path, message in exc.issues],
    }


def authorize_channel(publisher: ProgressPublisher, channel_id: str, owner_id: str) -> None:
    try:
        publisher.authorize(channel_id, owner_id)
    except ProgressChannelNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Progress session not found"},
        )
    except ProgressChannelForbidden:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Forbidden"},
        )


def stream_channel(
    publisher: ProgressPublisher,
    channel_id: str,
    owner_id: str,
    heartbeat_seconds: float,
) -> StreamingResponse:
    """Authorize, then stream the channel as SSE until a terminal update.

    Example client usage:
    ```javascript
    const events = new EventSource('/api/import/progress/{channelId}');
    events.onmessage = (e) => console.log(JSON.parse(e.data).percentage);
    ```
    """
    authorize_channel(publisher, channel_id, owner_id)
    updates = publisher.subscribe(channel_id, heartbeat_interval=heartbeat_seconds)
    return sse_response(frame_updates(updates))
