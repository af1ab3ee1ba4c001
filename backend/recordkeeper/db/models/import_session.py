"""Track bulk import jobs for progress, recovery and resume."""

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String

from recordkeeper.db.models.record import JSONType
from recordkeeper.db.base import Base

SESSION_STATUSES = (
    "initializing",
    "in-progress",
    "paused",
    "completed",
    "failed",
    "cancelled",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportSession(Base):
    __tablename__ = "import_sessions"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(64), unique=True, nullable=False)
    owner_id = Column(String(255), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="initializing")
    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    imported_records = Column(Integer, nullable=False, default=0)
    skipped_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)
    last_processed_index = Column(Integer, nullable=True)
    error_log = Column(JSONType, nullable=False, default=list)
    # Normalized record list, kept only when payload retention is enabled.
    source_records = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint(
            f"status IN ({', '.join(repr(s) for s in SESSION_STATUSES)})",
            name="ck_import_sessions_status",
        ),
        CheckConstraint(
            "processed_records <= total_records",
            name="ck_import_sessions_processed_le_total",
        ),
        Index("ix_import_sessions_owner_status", owner_id, status),
        Index("ix_import_sessions_created_at", created_at),
    )
