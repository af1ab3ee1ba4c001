"""Durable lifecycle tracking for import jobs: counters, status, error log, resume cursor."""

from __future__ import annotations

import logging
import math
import secrets
import string
import time
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from recordkeeper.api.schemas.envelope import ImportRecord
from recordkeeper.api.schemas.errors import (
    ErrorLogEntry,
    ErrorSummary,
    ImportErrorResponse,
    ResumeInfo,
)
from recordkeeper.core.config import Settings, get_settings
from recordkeeper.core.exceptions import ImportSessionNotFound, InvalidSessionTransition
from recordkeeper.db.models.import_session import ImportSession
from recordkeeper.services.repair_advisor import generate_repair_suggestions
from recordkeeper.utils.timestamps import ensure_utc, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "initializing": frozenset({"in-progress", "failed", "cancelled"}),
    "in-progress": frozenset({"completed", "paused", "failed", "cancelled"}),
    "paused": frozenset({"in-progress", "cancelled"}),
    "failed": frozenset({"in-progress", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}
RESUMABLE_STATUSES = frozenset({"paused", "failed"})
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"import-{int(time.time() * 1000)}-{suffix}"


class ImportSessionStore:
    """SQLAlchemy-backed store; every mutating call commits its own transaction."""

    def __init__(
        self,
        db: Session,
        *,
        max_error_log_size: int = 1000,
        expiry_hours: int = 24,
        throughput: int = 100,
    ):
        self.db = db
        self.max_error_log_size = max_error_log_size
        self.expiry = timedelta(hours=expiry_hours)
        self.throughput = throughput

    @classmethod
    def from_settings(cls, db: Session, settings: Settings | None = None) -> "ImportSessionStore":
        settings = settings or get_settings()
        return cls(
            db,
            max_error_log_size=settings.max_error_log_size,
            expiry_hours=settings.session_expiry_hours,
            throughput=settings.resume_throughput,
        )

    # Lifecycle -----------------------------------------------------------

    def create(
        self,
        owner_id: str,
        total_records: int,
        *,
        source_records: list[ImportRecord] | None = None,
    ) -> ImportSession:
        session = ImportSession(
            session_id=generate_session_id(),
            owner_id=owner_id,
            status="initializing",
            total_records=total_records,
            error_log=[],
            source_records=(
                [record.to_wire() for record in source_records] if source_records is not None else None
            ),
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        logger.info(f"Created import session {session.session_id} for {total_records} records")
        return session

    def get(self, session_id: str, owner_id: str | None = None) -> ImportSession:
        """Fetch a session; sessions owned by someone else are reported as missing."""
        session = self.db.scalar(select(ImportSession).where(ImportSession.session_id == session_id))
        if session is None or (owner_id is not None and session.owner_id != owner_id):
            raise ImportSessionNotFound(session_id)
        return session

    def update_status(self, session_id: str, status: str) -> ImportSession:
        session = self.get(session_id)
        current = session.status
        if status not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidSessionTransition(session_id, current, status)
        session.status = status
        if status in TERMINAL_STATUSES:
            session.source_records = None
        self.db.commit()
        logger.info(f"Import session {session_id}: {current} -> {status}")
        return session

    def cancel(self, session_id: str, owner_id: str | None = None) -> ImportSession:
        self.get(session_id, owner_id)
        return self.update_status(session_id, "cancelled")

    # Progress ------------------------------------------------------------

    def update_progress(
        self,
        session_id: str,
        *,
        processed: int,
        imported: int,
        skipped: int,
        failed: int,
        last_index: int | None,
    ) -> ImportSession:
        return self.record_chunk(
            session_id,
            processed=processed,
            imported=imported,
            skipped=skipped,
            failed=failed,
            last_index=last_index,
        )

    def record_chunk(
        self,
        session_id: str,
        *,
        processed: int,
        imported: int,
        skipped: int,
        failed: int,
        last_index: int | None,
        errors: Iterable[ErrorLogEntry] = (),
    ) -> ImportSession:
        """Persist cumulative counters and the chunk's error entries in one commit."""
        session = self.get(session_id)
        session.processed_records = min(processed, session.total_records)
        session.imported_records = imported
        session.skipped_records = skipped
        session.failed_records = failed
        session.last_processed_index = last_index
        self._extend_log(session, errors)
        self.db.commit()
        return session

    def append_errors(self, session_id: str, entries: Iterable[ErrorLogEntry]) -> ImportSession:
        session = self.get(session_id)
        self._extend_log(session, entries)
        self.db.commit()
        return session

    def append_error(self, session_id: str, entry: ErrorLogEntry) -> ImportSession:
        return self.append_errors(session_id, [entry])

    def _extend_log(self, session: ImportSession, entries: Iterable[ErrorLogEntry]) -> None:
        added = [entry.to_wire() for entry in entries]
        if not added:
            return
        log = list(session.error_log or []) + added
        if len(log) > self.max_error_log_size:
            log = log[-self.max_error_log_size:]
        # Reassign so the JSON column is flagged dirty.
        session.error_log = log

    # Queries -------------------------------------------------------------

    def errors(self, session: ImportSession) -> list[ErrorLogEntry]:
        return [ErrorLogEntry.model_validate(raw) for raw in session.error_log or []]

    def is_expired(self, session: ImportSession, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return now - ensure_utc(session.created_at) >= self.expiry

    def can_resume(self, session_id: str, now: datetime | None = None) -> bool:
        session = self.get(session_id)
        return session.status in RESUMABLE_STATUSES and not self.is_expired(session, now)

    def resume_info(self, session_id: str) -> ResumeInfo:
        session = self.get(session_id)
        remaining = max(session.total_records - session.processed_records, 0)
        last_index = session.last_processed_index
        return ResumeInfo(
            session_id=session.session_id,
            last_processed_index=-1 if last_index is None else last_index,
            remaining_records=remaining,
            estimated_time=math.ceil(remaining / self.throughput),
        )

    def error_summary(self, session_id: str) -> ErrorSummary:
        session = self.get(session_id)
        entries = self.errors(session)
        by_severity = {"error": 0, "warning": 0, "info": 0}
        for entry in entries:
            by_severity[entry.severity] = by_severity.get(entry.severity, 0) + 1
        return ErrorSummary(
            total_errors=len(entries),
            errors_by_type=dict(Counter(entry.error_code for entry in entries)),
            errors_by_severity=by_severity,
            affected_records=sorted({e.record_index for e in entries if e.record_index >= 0}),
            successful_records=session.imported_records,
            failed_records=session.failed_records,
        )

    def build_error_response(self, session_id: str, *, include_resume: bool = True) -> ImportErrorResponse:
        session = self.get(session_id)
        entries = self.errors(session)
        return ImportErrorResponse(
            session_id=session.session_id,
            can_resume=self.can_resume(session_id),
            error_summary=self.error_summary(session_id),
            errors=entries,
            repair_suggestions=generate_repair_suggestions(entries),
            resume_info=self.resume_info(session_id) if include_resume else None,
        )

    def retained_records(self, session: ImportSession) -> list[ImportRecord] | None:
        if session.source_records is None:
            return None
        return [ImportRecord.model_validate(raw) for raw in session.source_records]

    # Housekeeping --------------------------------------------------------

    def delete_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - self.expiry
        result = self.db.execute(
            delete(ImportSession).where(ImportSession.created_at < cutoff),
            execution_options={"synchronize_session": False},
        )
        self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} expired import sessions")
        return deleted
