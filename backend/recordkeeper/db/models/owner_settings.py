"""Per-owner normalization preferences."""

from sqlalchemy import Boolean, Column, String

from recordkeeper.db.base import Base


class OwnerSettings(Base):
    __tablename__ = "owner_settings"

    owner_id = Column(String(255), primary_key=True)
    case_sensitive = Column(Boolean, nullable=False, default=False)
    remove_accents = Column(Boolean, nullable=False, default=True)
