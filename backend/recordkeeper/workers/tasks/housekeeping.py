"""Periodic cleanup of import sessions past their resume window."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session, sessionmaker

from recordkeeper.core.config import get_settings
from recordkeeper.db.session import get_fresh_session
from recordkeeper.services.import_sessions import ImportSessionStore
from recordkeeper.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def delete_expired_sessions(factory: sessionmaker[Session] | None = None) -> int:
    db = get_fresh_session(factory)
    try:
        return ImportSessionStore.from_settings(db, get_settings()).delete_expired()
    finally:
        db.close()


@celery_app.task(name="recordkeeper.workers.tasks.cleanup_expired_sessions")
def cleanup_expired_sessions_task() -> dict[str, int]:
    """Delete import sessions older than the expiry window."""
    deleted = delete_expired_sessions()
    logger.info(f"Housekeeping removed {deleted} expired import sessions")
    return {"deleted": deleted}
