"""Tag frequency and prefix suggestions over an owner's records."""

from __future__ import annotations

from collections import Counter

from sqlalchemy import select
from sqlalchemy.orm import Session

from recordkeeper.db.models.record import Record


def tag_frequencies(db: Session, owner_id: str) -> list[tuple[str, int]]:
    """Number of records carrying each normalized tag, most frequent first."""
    counts: Counter[str] = Counter()
    rows = db.scalars(select(Record.normalized_tags).where(Record.owner_id == owner_id))
    for tags in rows:
        counts.update(set(tags or []))
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def suggest_tags(db: Session, owner_id: str, prefix: str, limit: int = 10) -> list[str]:
    """Tags starting with ``prefix`` (case-insensitive), by frequency then alphabetically."""
    needle = prefix.strip().casefold()
    if not needle:
        return []
    return [tag for tag, _ in tag_frequencies(db, owner_id) if tag.startswith(needle)][:limit]
