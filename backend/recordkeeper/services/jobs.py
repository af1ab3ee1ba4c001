"""Start, run and resume import jobs and run background exports."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from recordkeeper.api.schemas.envelope import ImportRecord
from recordkeeper.api.schemas.errors import ResumeInfo
from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.core.config import Settings
from recordkeeper.core.exceptions import ExportError, SessionNotResumable, TooManyRecordsError
from recordkeeper.db.models.import_session import ImportSession
from recordkeeper.db.session import get_fresh_session
from recordkeeper.services.export_streamer import ExportStreamer
from recordkeeper.services.import_engine import ImportEngine, ImportResult, ProgressCallback
from recordkeeper.services.import_sessions import ImportSessionStore
from recordkeeper.services.progress_publisher import ProgressPublisher
from recordkeeper.utils.payload_validator import PayloadValidationError, validate_records

logger = logging.getLogger(__name__)


@dataclass
class ResumePlan:
    session_id: str
    resume_info: ResumeInfo
    records: list[ImportRecord] | None = None

    @property
    def offset(self) -> int:
        return self.resume_info.last_processed_index + 1

    @property
    def requires_records(self) -> bool:
        return self.records is None


def close_channel(publisher: ProgressPublisher, channel_id: str, message: str) -> None:
    """Publish a terminal error unless the job already ended its channel."""
    latest = publisher.latest(channel_id)
    if latest is not None and latest.is_terminal:
        return
    publisher.publish(
        channel_id,
        ProgressUpdate(
            status="error",
            processed=latest.processed if latest else 0,
            total=latest.total if latest else 0,
            session_id=latest.session_id if latest else None,
            current_operation=message,
            log=message,
        ),
    )


def check_record_limit(count: int, maximum: int) -> None:
    if count > maximum:
        raise TooManyRecordsError(count, maximum)


def start_session(
    db: Session,
    owner_id: str,
    records: list[ImportRecord],
    settings: Settings,
) -> ImportSession:
    """Create the session for a validated payload, retaining it when configured."""
    check_record_limit(len(records), settings.import_max_records)
    sessions = ImportSessionStore.from_settings(db, settings)
    return sessions.create(
        owner_id,
        len(records),
        source_records=records if settings.retain_import_payload else None,
    )


def build_engine(
    db: Session,
    settings: Settings,
    progress: ProgressCallback | None = None,
) -> ImportEngine:
    return ImportEngine(
        db,
        ImportSessionStore.from_settings(db, settings),
        chunk_size=settings.import_chunk_size,
        progress=progress,
    )


async def run_import(
    db: Session,
    owner_id: str,
    session_id: str,
    records: list[ImportRecord],
    settings: Settings,
    *,
    offset: int = 0,
    progress: ProgressCallback | None = None,
) -> ImportResult:
    engine = build_engine(db, settings, progress)
    return await engine.run(records, owner_id, session_id, offset=offset)


async def run_import_job(
    factory: sessionmaker[Session],
    publisher: ProgressPublisher,
    channel_id: str,
    owner_id: str,
    session_id: str,
    records: list[ImportRecord],
    settings: Settings,
    *,
    offset: int = 0,
) -> None:
    """Background entry point: the request session is gone, so open a fresh one."""
    db = get_fresh_session(factory)
    try:
        await run_import(
            db,
            owner_id,
            session_id,
            records,
            settings,
            offset=offset,
            progress=functools.partial(publisher.publish, channel_id),
        )
    except Exception as e:
        logger.error(f"Background import {session_id} on {channel_id} failed: {e}", exc_info=True)
        raise
    finally:
        close_channel(publisher, channel_id, "Import failed")
        db.close()


def plan_resume(
    db: Session,
    session_id: str,
    owner_id: str,
    raw_records: Any,
    settings: Settings,
) -> ResumePlan:
    """Work out what a resume request will process.

    Without ``raw_records`` the retained payload is used when the session has one;
    otherwise the plan only reports what the caller must resubmit. Submitted
    records must be exactly the unprocessed tail of the original list.
    """
    sessions = ImportSessionStore.from_settings(db, settings)
    session = sessions.get(session_id, owner_id)
    if not sessions.can_resume(session_id):
        raise SessionNotResumable(session_id)
    info = sessions.resume_info(session_id)
    offset = info.last_processed_index + 1

    if raw_records is None:
        retained = sessions.retained_records(session)
        if retained is None:
            return ResumePlan(session_id=session_id, resume_info=info)
        return ResumePlan(session_id=session_id, resume_info=info, records=retained[offset:])

    records = validate_records(raw_records, max_content_length=settings.import_max_content_length)
    if len(records) != info.remaining_records:
        raise PayloadValidationError(
            [
                (
                    "records",
                    f"Expected the {info.remaining_records} unprocessed records starting at "
                    f"index {offset}, got {len(records)}",
                )
            ]
        )
    return ResumePlan(session_id=session_id, resume_info=info, records=records)


async def run_export_job(
    factory: sessionmaker[Session],
    publisher: ProgressPublisher,
    channel_id: str,
    owner_id: str,
    settings: Settings,
) -> None:
    db = get_fresh_session(factory)
    try:
        streamer = ExportStreamer(
            db,
            chunk_size=settings.export_chunk_size,
            progress=functools.partial(publisher.publish, channel_id),
        )
        await streamer.export(owner_id)
    except ExportError as e:
        # The failure has already been published on the channel.
        logger.error(f"Background export on {channel_id} failed: {e}")
    except Exception as e:
        logger.error(f"Background export on {channel_id} failed: {e}", exc_info=True)
        close_channel(publisher, channel_id, "Export failed")
        raise
    finally:
        db.close()
