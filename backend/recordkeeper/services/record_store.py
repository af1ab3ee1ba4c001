"""Owner-scoped access to stored records and normalization settings."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, SessionTransaction

from recordkeeper.api.schemas.envelope import DEFAULT_NORMALIZATION_RULES, NormalizationRules
from recordkeeper.db.models.owner_settings import OwnerSettings
from recordkeeper.db.models.record import Record


class RecordStore:
    """Thin repository over ``records`` for one owner.

    Inserts run inside a SAVEPOINT so a failing record leaves the surrounding
    chunk transaction usable. ``commit``/``rollback`` resolve the chunk.
    """

    def __init__(self, db: Session, owner_id: str):
        self.db = db
        self.owner_id = owner_id

    def find_by_fingerprint(self, fingerprint: str) -> Record | None:
        return self.db.scalar(
            select(Record).where(
                Record.owner_id == self.owner_id,
                Record.tag_fingerprint == fingerprint,
            )
        )

    def savepoint(self) -> SessionTransaction:
        return self.db.begin_nested()

    def insert(
        self,
        *,
        content: str,
        tags: list[str],
        normalized_tags: list[str],
        fingerprint: str,
        created_at: datetime,
        updated_at: datetime,
    ) -> Record:
        record = Record(
            owner_id=self.owner_id,
            content=content,
            tags=tags,
            normalized_tags=normalized_tags,
            tag_fingerprint=fingerprint,
            created_at=created_at,
            updated_at=updated_at,
        )
        with self.savepoint():
            self.db.add(record)
            self.db.flush()
        return record

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def count(self) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Record).where(Record.owner_id == self.owner_id)
        ) or 0

    def page(self, after: tuple[datetime, int] | None, limit: int) -> list[Record]:
        """Records in stable creation order, starting after the ``(created_at, id)`` cursor.

        Keyset paging: rows inserted behind the cursor while paging do not shift
        later pages.
        """
        query = select(Record).where(Record.owner_id == self.owner_id)
        if after is not None:
            created_at, record_id = after
            query = query.where(
                or_(
                    Record.created_at > created_at,
                    and_(Record.created_at == created_at, Record.id > record_id),
                )
            )
        return list(
            self.db.scalars(query.order_by(Record.created_at.asc(), Record.id.asc()).limit(limit))
        )

    def normalization_rules(self) -> NormalizationRules:
        settings = self.db.get(OwnerSettings, self.owner_id)
        if settings is None:
            return DEFAULT_NORMALIZATION_RULES.model_copy()
        return NormalizationRules(
            case_sensitive=settings.case_sensitive,
            remove_accents=settings.remove_accents,
        )
