"""Database models package."""
from recordkeeper.db.models.record import Record
from recordkeeper.db.models.import_session import ImportSession
from recordkeeper.db.models.owner_settings import OwnerSettings

__all__ = ["Record", "ImportSession", "OwnerSettings"]
