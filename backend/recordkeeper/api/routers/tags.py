"""Read-side tag lookups over the caller's records."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from recordkeeper.api.dependencies.auth import get_owner_id
from recordkeeper.api.dependencies.db import get_session
from recordkeeper.api.schemas.imports import TagCount, TagSuggestions
from recordkeeper.services.tag_stats import suggest_tags, tag_frequencies

router = APIRouter()


@router.get(
    "",
    summary="Tag frequencies",
    response_model=list[TagCount],
)
async def list_tags(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
) -> list[TagCount]:
    return [TagCount(tag=tag, count=count) for tag, count in tag_frequencies(db, owner_id)]


@router.get(
    "/suggest",
    summary="Tag suggestions by prefix",
    response_model=TagSuggestions,
)
async def suggest(
    q: str = Query(..., min_length=1, max_length=100, description="Tag prefix"),
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
) -> TagSuggestions:
    return TagSuggestions(query=q, suggestions=suggest_tags(db, owner_id, q, limit))
