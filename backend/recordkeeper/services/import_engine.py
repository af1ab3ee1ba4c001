"""Chunked transactional import with session-based recovery."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from recordkeeper.api.schemas.envelope import ImportRecord
from recordkeeper.api.schemas.errors import ErrorLogEntry
from recordkeeper.api.schemas.progress import ProgressUpdate
from recordkeeper.core.exceptions import ImportSessionNotFound
from recordkeeper.services import error_messages
from recordkeeper.services.error_messages import ErrorCode
from recordkeeper.services.import_sessions import ImportSessionStore
from recordkeeper.services.record_store import RecordStore
from recordkeeper.utils.tags import (
    extract_tags,
    has_invalid_characters,
    normalize_tags,
    tag_fingerprint,
)
from recordkeeper.utils.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500
RECENT_ERRORS_IN_PROGRESS = 5

ProgressCallback = Callable[[ProgressUpdate], None]


class ChunkAborted(Exception):
    """The chunk transaction cannot continue; everything in it must be rolled back."""

    def __init__(self, reason: str, *, connection_lost: bool = False):
        self.reason = reason
        self.connection_lost = connection_lost
        super().__init__(reason)


@dataclass
class ChunkRollbackInfo:
    chunk_number: int
    chunk_size: int
    start_index: int
    end_index: int
    reason: str
    records_affected: int


@dataclass
class ChunkOutcome:
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    entries: list[ErrorLogEntry] = field(default_factory=list)


@dataclass
class ImportResult:
    success: bool
    imported: int
    skipped: int
    errors: list[str]
    session_id: str | None = None
    status: str = "completed"
    rollback: ChunkRollbackInfo | None = None

    def as_response(self) -> dict:
        return {"imported": self.imported, "skipped": self.skipped, "errors": self.errors}


def _is_connection_failure(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, DisconnectionError):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def _driver_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class ImportEngine:
    """Processes a record list in sequential, individually committed chunks.

    Counters are cumulative on the session, so a resumed run continues from the
    values persisted by the last committed chunk.
    """

    def __init__(
        self,
        db: Session,
        sessions: ImportSessionStore,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress: ProgressCallback | None = None,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.db = db
        self.sessions = sessions
        self.chunk_size = chunk_size
        self.progress = progress

    def _emit(self, update: ProgressUpdate) -> None:
        if self.progress is not None:
            self.progress(update)

    def _is_cancelled(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        self.db.refresh(session)
        return session.status == "cancelled"

    async def run(
        self,
        records: Sequence[ImportRecord],
        owner_id: str,
        session_id: str,
        *,
        offset: int = 0,
    ) -> ImportResult:
        """Import ``records``; ``offset`` is the global index of ``records[0]``.

        Every storage step runs in a worker thread, so the event loop keeps serving
        requests and progress streams while a chunk is being written. The session
        object is only touched by one thread at a time.
        """
        total = processed = imported = skipped = failed = 0
        messages: list[str] = []
        store = RecordStore(self.db, owner_id)

        def snapshot(status: str, **extra) -> ProgressUpdate:
            return ProgressUpdate(
                status=status,
                processed=processed,
                total=total,
                imported=imported,
                skipped=skipped,
                errors=failed,
                session_id=session_id,
                **extra,
            )

        def result(success: bool, status: str, rollback: ChunkRollbackInfo | None = None) -> ImportResult:
            return ImportResult(
                success=success,
                imported=imported,
                skipped=skipped,
                errors=messages,
                session_id=session_id,
                status=status,
                rollback=rollback,
            )

        chunk_count = math.ceil(len(records) / self.chunk_size)
        try:
            session = await asyncio.to_thread(self.sessions.get, session_id)
            total = session.total_records
            processed = session.processed_records
            imported = session.imported_records
            skipped = session.skipped_records
            failed = session.failed_records
            if session.status != "in-progress":
                await asyncio.to_thread(self.sessions.update_status, session_id, "in-progress")
            self._emit(
                snapshot(
                    "started",
                    current_operation="Starting import",
                    log=f"Importing {len(records)} records in {chunk_count} chunk(s)",
                )
            )

            for chunk_number, start in enumerate(range(0, len(records), self.chunk_size), start=1):
                if await asyncio.to_thread(self._is_cancelled, session_id):
                    logger.info(f"Import session {session_id} cancelled before chunk {chunk_number}")
                    self._emit(snapshot("error", current_operation="Cancelled", log="Import cancelled"))
                    return result(False, "cancelled")

                chunk = records[start:start + self.chunk_size]
                first_index = offset + start
                last_index = first_index + len(chunk) - 1
                self._emit(
                    snapshot(
                        "processing",
                        current_operation=f"Processing chunk {chunk_number}/{chunk_count}",
                    )
                )

                try:
                    outcome = await asyncio.to_thread(self._write_chunk, store, chunk, first_index)
                except (ChunkAborted, SQLAlchemyError) as exc:
                    await asyncio.to_thread(store.rollback)
                    if isinstance(exc, ChunkAborted):
                        reason, connection_lost = exc.reason, exc.connection_lost
                    else:
                        reason, connection_lost = _driver_message(exc), _is_connection_failure(exc)
                    rollback = ChunkRollbackInfo(
                        chunk_number=chunk_number,
                        chunk_size=len(chunk),
                        start_index=first_index,
                        end_index=last_index,
                        reason=reason,
                        records_affected=len(chunk),
                    )
                    entry = await asyncio.to_thread(self._record_rollback, session_id, rollback, connection_lost)
                    messages.append(entry.message)
                    self._emit(snapshot("error", current_operation="Import paused", log=entry.message))
                    return result(False, "paused", rollback)

                processed += len(chunk)
                imported += outcome.imported
                skipped += outcome.skipped
                failed += outcome.failed
                messages.extend(
                    entry.message
                    for entry in outcome.entries
                    if entry.error_code != ErrorCode.DUPLICATE_RECORD.value
                )
                await asyncio.to_thread(
                    self.sessions.record_chunk,
                    session_id,
                    processed=processed,
                    imported=imported,
                    skipped=skipped,
                    failed=failed,
                    last_index=last_index,
                    errors=outcome.entries,
                )
                recent = [entry.message for entry in outcome.entries[-RECENT_ERRORS_IN_PROGRESS:]]
                self._emit(
                    snapshot(
                        "processing",
                        current_operation=f"Committed chunk {chunk_number}/{chunk_count}",
                        log="\n".join(recent) or None,
                    )
                )
                logger.debug(
                    f"Session {session_id}: chunk {chunk_number}/{chunk_count} committed "
                    f"({outcome.imported} imported, {outcome.skipped} skipped, {outcome.failed} failed)"
                )
                # Let other jobs and SSE subscribers run between chunks.
                await asyncio.sleep(0)

            if await asyncio.to_thread(self._is_cancelled, session_id):
                self._emit(snapshot("error", current_operation="Cancelled", log="Import cancelled"))
                return result(False, "cancelled")

            await asyncio.to_thread(self.sessions.update_status, session_id, "completed")
            self._emit(
                snapshot(
                    "completed",
                    current_operation="Import complete",
                    log=f"Imported {imported}, skipped {skipped}, failed {failed}",
                )
            )
            logger.info(
                f"Import session {session_id} completed: {imported} imported, {skipped} skipped, {failed} failed"
            )
            return result(True, "completed")
        except Exception as exc:
            logger.error(f"Import session {session_id} failed: {exc}", exc_info=True)
            entry = error_messages.import_failed(str(exc))
            messages.append(entry.message)
            try:
                await asyncio.to_thread(self._record_failure, session_id, entry)
            except (SQLAlchemyError, ImportSessionNotFound) as persist_exc:
                # The store itself may be down.
                logger.error(
                    f"Could not record failure of import session {session_id}: {persist_exc}",
                    exc_info=True,
                )
            self._emit(snapshot("error", current_operation="Import failed", log=entry.message))
            return result(False, "failed")

    def _write_chunk(
        self,
        store: RecordStore,
        chunk: Sequence[ImportRecord],
        first_index: int,
    ) -> ChunkOutcome:
        outcome = self._process_chunk(store, chunk, first_index)
        store.commit()
        return outcome

    def _record_failure(self, session_id: str, entry: ErrorLogEntry) -> None:
        """Discard the open chunk, fail the session and log the cause."""
        self.db.rollback()
        if self.sessions.get(session_id).status in ("initializing", "in-progress"):
            self.sessions.update_status(session_id, "failed")
        self.sessions.append_error(session_id, entry)

    def _record_rollback(
        self,
        session_id: str,
        rollback: ChunkRollbackInfo,
        connection_lost: bool,
    ) -> ErrorLogEntry:
        """Log the aborted chunk on the session and pause it for resume."""
        logger.warning(
            f"Session {session_id}: chunk {rollback.chunk_number} rolled back "
            f"(records {rollback.start_index}-{rollback.end_index}): {rollback.reason}"
        )
        entries = []
        if connection_lost:
            entries.append(error_messages.database_error("connection lost", rollback.start_index))
        chunk_entry = error_messages.chunk_failed(rollback.chunk_number, rollback.start_index, rollback.reason)
        entries.append(chunk_entry)
        self.sessions.append_errors(session_id, entries)
        self.sessions.update_status(session_id, "paused")
        return chunk_entry

    def _process_chunk(
        self,
        store: RecordStore,
        chunk: Sequence[ImportRecord],
        first_index: int,
    ) -> ChunkOutcome:
        outcome = ChunkOutcome()
        for position, record in enumerate(chunk):
            index = first_index + position
            tags = extract_tags(record.content)
            if not tags:
                outcome.entries.append(error_messages.empty_content(index))
                outcome.failed += 1
                continue
            if has_invalid_characters(record.content):
                outcome.entries.append(error_messages.invalid_characters(index, record.content))
                outcome.failed += 1
                continue

            normalized = normalize_tags(tags)
            fingerprint = tag_fingerprint(normalized)
            try:
                if store.find_by_fingerprint(fingerprint) is not None:
                    outcome.entries.append(error_messages.duplicate_record(record.content, index))
                    outcome.skipped += 1
                    continue

                created_at = parse_timestamp(record.created_at)
                updated_at = parse_timestamp(record.updated_at)
                if created_at is None or updated_at is None:
                    bad = record.created_at if created_at is None else record.updated_at
                    outcome.entries.append(error_messages.invalid_date(bad, index, record.content))
                    outcome.failed += 1
                    continue

                store.insert(
                    content=record.content,
                    tags=tags,
                    normalized_tags=normalized,
                    fingerprint=fingerprint,
                    created_at=created_at,
                    updated_at=updated_at,
                )
                outcome.imported += 1
            except IntegrityError:
                # Another job stored the same tag set after our lookup.
                outcome.entries.append(error_messages.duplicate_record(record.content, index))
                outcome.skipped += 1
            except SQLAlchemyError as exc:
                if _is_connection_failure(exc):
                    raise ChunkAborted(_driver_message(exc), connection_lost=True) from exc
                logger.warning(f"Record {index} failed: {exc}")
                outcome.entries.append(error_messages.database_error(_driver_message(exc), index))
                outcome.failed += 1
        return outcome
