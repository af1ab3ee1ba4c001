"""SQLAlchemy model for tagged records."""

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from recordkeeper.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Record(Base):
    __tablename__ = "records"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False)
    tags = Column(JSONType, nullable=False)
    normalized_tags = Column(JSONType, nullable=False)
    # SHA-256 hex digest of the sorted, de-duplicated normalized tags.
    tag_fingerprint = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ux_records_owner_fingerprint", owner_id, tag_fingerprint, unique=True),
        Index("ix_records_owner_created", owner_id, created_at, id),
    )
