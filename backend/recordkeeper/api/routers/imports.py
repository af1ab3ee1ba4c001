"""Bulk import endpoints: submit, observe, inspect, resume and cancel jobs."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from recordkeeper.api.dependencies.auth import get_owner_id
from recordkeeper.api.dependencies.db import get_session
from recordkeeper.api.dependencies.progress import get_publisher
from recordkeeper.api.routers.import_helpers import (
    authorize_channel,
    serialize_session,
    stream_channel,
    validation_error_detail,
)
from recordkeeper.api.schemas.imports import ImportResultResponse, ImportSessionStatus, ResumeResponse
from recordkeeper.api.schemas.progress import ProgressAccepted
from recordkeeper.core.config import Settings, get_settings
from recordkeeper.core.exceptions import (
    ImportSessionNotFound,
    InvalidSessionTransition,
    ProgressChannelNotFound,
    SessionNotResumable,
    TooManyRecordsError,
)
from recordkeeper.db.session import get_session_factory
from recordkeeper.services import error_messages
from recordkeeper.services.import_engine import ImportResult
from recordkeeper.services.import_sessions import ImportSessionStore
from recordkeeper.services.jobs import (
    plan_resume,
    run_import,
    run_import_job,
    start_session,
)
from recordkeeper.services.progress_publisher import ProgressPublisher
from recordkeeper.services.repair_advisor import generate_repair_suggestions
from recordkeeper.utils.payload_validator import PayloadValidationError, validate_payload

logger = logging.getLogger(__name__)
router = APIRouter()


def _progress_url(channel_id: str) -> str:
    return f"/api/import/progress/{channel_id}"


def _session_not_found(session_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": f"Import session {session_id} not found"},
    )


def _result_or_error(result: ImportResult, db: Session, settings: Settings) -> dict[str, Any]:
    """Successful runs return counters; paused or failed runs return the recovery bundle."""
    if result.success:
        return ImportResultResponse(**result.as_response()).model_dump()
    store = ImportSessionStore.from_settings(db, settings)
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=store.build_error_response(result.session_id).to_wire(),
    )


@router.post(
    "",
    summary="Import records from an export envelope",
    response_model=None,
)
async def import_records(
    request: Request,
    background_tasks: BackgroundTasks,
    progress: bool = Query(False, description="Run in the background and report progress over SSE"),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    factory: sessionmaker[Session] = Depends(get_session_factory),
    publisher: ProgressPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any] | JSONResponse:
    """Validate the envelope, then import it in chunked transactions.

    Synchronous calls answer with ``{imported, skipped, errors}``. With
    ``?progress=true`` the job runs after the response and a 202 carries the
    session id and the progress channel to subscribe to.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        entry = error_messages.malformed_payload(str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": entry.message, "code": entry.error_code, "suggestion": entry.suggestion.to_wire()},
        )

    try:
        validated = validate_payload(payload, max_content_length=settings.import_max_content_length)
        session = start_session(db, owner_id, validated.records, settings)
    except PayloadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=validation_error_detail(e))
    except TooManyRecordsError as e:
        entry = error_messages.too_many_records(e.actual, e.maximum)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": entry.message,
                "code": entry.error_code,
                "repairSuggestions": [
                    s.to_wire()
                    for s in generate_repair_suggestions([entry], max_records=settings.import_max_records)
                ],
            },
        )
    except SQLAlchemyError as e:
        logger.error(f"Could not create import session: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Import failed due to a database error"},
        )

    if progress:
        session_id = session.session_id
        # Release the request connection; the job opens its own session.
        db.commit()
        channel_id = publisher.create_channel(owner_id)
        background_tasks.add_task(
            run_import_job,
            factory,
            publisher,
            channel_id,
            owner_id,
            session_id,
            validated.records,
            settings,
        )
        logger.info(f"Queued import session {session_id} on channel {channel_id}")
        accepted = ProgressAccepted(
            session_id=session_id,
            progress_channel_id=channel_id,
            progress_url=_progress_url(channel_id),
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.to_wire())

    result = await run_import(db, owner_id, session.session_id, validated.records, settings)
    return _result_or_error(result, db, settings)


@router.get(
    "/progress/{channel_id}",
    summary="Server-Sent Events stream for import progress",
)
async def stream_import_progress(
    channel_id: str,
    owner_id: str = Depends(get_owner_id),
    publisher: ProgressPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """Replay buffered updates, then stream live ones; closes after completed/error."""
    return stream_channel(publisher, channel_id, owner_id, settings.progress_heartbeat_seconds)


@router.get(
    "/progress/{channel_id}/latest",
    summary="Latest progress snapshot for polling clients",
)
async def latest_import_progress(
    channel_id: str,
    owner_id: str = Depends(get_owner_id),
    publisher: ProgressPublisher = Depends(get_publisher),
) -> dict[str, Any]:
    if publisher.has_channel(channel_id):
        authorize_channel(publisher, channel_id, owner_id)
        try:
            latest = publisher.latest(channel_id)
        except ProgressChannelNotFound:
            latest = None
        if latest is not None:
            return latest.to_wire()

    snapshot = publisher.snapshot_store.fetch(channel_id) if publisher.snapshot_store else {}
    if snapshot and snapshot.pop("ownerId", None) == owner_id:
        return snapshot
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "Progress session not found"},
    )


@router.get(
    "/sessions/{session_id}",
    summary="Import session state, error summary and resumability",
    response_model=ImportSessionStatus,
)
async def get_import_session(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ImportSessionStatus:
    store = ImportSessionStore.from_settings(db, settings)
    try:
        session = store.get(session_id, owner_id)
    except ImportSessionNotFound:
        raise _session_not_found(session_id)
    return serialize_session(session, store)


@router.post(
    "/sessions/{session_id}/resume",
    summary="Resume a paused or failed import",
    response_model=None,
)
async def resume_import_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    body: dict[str, Any] | None = Body(None),
    progress: bool = Query(False),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    factory: sessionmaker[Session] = Depends(get_session_factory),
    publisher: ProgressPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any] | JSONResponse:
    """Continue an import from its resume cursor.

    The body may carry ``records``: the unprocessed tail of the original list,
    starting at ``lastProcessedIndex + 1``. Without it the retained payload is
    used; when none was retained the response only reports what is needed.
    """
    raw_records = body.get("records") if body else None
    try:
        plan = plan_resume(db, session_id, owner_id, raw_records, settings)
    except ImportSessionNotFound:
        raise _session_not_found(session_id)
    except SessionNotResumable as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": str(e)})
    except PayloadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=validation_error_detail(e))

    if plan.requires_records:
        return ResumeResponse(
            session_id=session_id,
            resumed=False,
            requires_records=True,
            resume_info=plan.resume_info,
        ).to_wire()

    if progress:
        db.commit()
        channel_id = publisher.create_channel(owner_id)
        background_tasks.add_task(
            run_import_job,
            factory,
            publisher,
            channel_id,
            owner_id,
            session_id,
            plan.records,
            settings,
            offset=plan.offset,
        )
        accepted = ResumeResponse(
            session_id=session_id,
            resumed=True,
            resume_info=plan.resume_info,
            progress_channel_id=channel_id,
            progress_url=_progress_url(channel_id),
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.to_wire())

    result = await run_import(db, owner_id, session_id, plan.records, settings, offset=plan.offset)
    if not result.success:
        return _result_or_error(result, db, settings)
    return ResumeResponse(
        session_id=session_id,
        resumed=True,
        status=result.status,
        resume_info=plan.resume_info,
        result=ImportResultResponse(**result.as_response()),
    ).to_wire()


@router.post(
    "/sessions/{session_id}/cancel",
    summary="Cancel an import; chunks already committed stay committed",
    response_model=ImportSessionStatus,
)
async def cancel_import_session(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ImportSessionStatus:
    store = ImportSessionStore.from_settings(db, settings)
    try:
        session = store.cancel(session_id, owner_id)
    except ImportSessionNotFound:
        raise _session_not_found(session_id)
    except InvalidSessionTransition as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": f"Import session is already {e.current}"},
        )
    return serialize_session(session, store)
