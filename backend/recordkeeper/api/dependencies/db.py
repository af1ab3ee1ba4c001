"""Database session dependencies."""

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from recordkeeper.db.session import get_db, get_session_factory


def get_session(
    factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """FastAPI dependency that yields a managed SQLAlchemy session."""
    yield from get_db(factory)
