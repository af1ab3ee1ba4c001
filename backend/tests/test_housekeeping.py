from datetime import timedelta

from sqlalchemy import select

from conftest import OWNER
from recordkeeper.db.models.import_session import ImportSession
from recordkeeper.utils.timestamps import utcnow
from recordkeeper.workers import celery_app as celery_module
from recordkeeper.workers.tasks import housekeeping


def test_delete_expired_sessions(db, db_factory, sessions):
    stale = sessions.create(OWNER, 1)
    fresh = sessions.create(OWNER, 1)
    fresh_id = fresh.session_id
    stale.created_at = utcnow() - timedelta(hours=25)
    db.commit()

    assert housekeeping.delete_expired_sessions(db_factory) == 1

    remaining = db.scalars(select(ImportSession.session_id)).all()
    assert remaining == [fresh_id]


def test_cleanup_task_reports_deleted_count(monkeypatch):
    monkeypatch.setattr(housekeeping, "delete_expired_sessions", lambda: 3)

    assert housekeeping.cleanup_expired_sessions_task() == {"deleted": 3}


def test_cleanup_is_scheduled_hourly():
    schedule = celery_module.celery_app.conf.beat_schedule["cleanup-expired-import-sessions"]

    assert schedule["task"] == "recordkeeper.workers.tasks.cleanup_expired_sessions"
    assert schedule["schedule"] == 3600
