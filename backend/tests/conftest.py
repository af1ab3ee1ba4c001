from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from recordkeeper.api.dependencies.progress import get_publisher
from recordkeeper.api.schemas.envelope import ImportRecord
from recordkeeper.core.config import Settings, get_settings
from recordkeeper.db import models  # noqa: F401
from recordkeeper.db.base import Base
from recordkeeper.db.session import build_engine, get_session_factory
from recordkeeper.main import create_app
from recordkeeper.services.import_sessions import ImportSessionStore
from recordkeeper.services.progress_publisher import ProgressPublisher

OWNER = "owner-1"
OTHER_OWNER = "owner-2"
CREATED_AT = "2024-01-15T10:30:00.000Z"
UPDATED_AT = "2024-01-16T08:00:00.000Z"


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of the redis client for snapshot storage."""

    def __init__(self):
        self.values = {}
        self.expiry = {}

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    def get(self, key):
        return self.values.get(key)

    def delete(self, key):
        self.values.pop(key, None)


def make_records(count: int, prefix: str = "record") -> list[ImportRecord]:
    return [
        ImportRecord(content=f"{prefix} {i}", created_at=CREATED_AT, updated_at=UPDATED_AT)
        for i in range(count)
    ]


def v2_envelope(records: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "version": "2.0",
        "records": records,
        "metadata": {
            "exportedAt": "2024-02-01T00:00:00.000Z",
            "recordCount": len(records),
            "normalizationRules": {"caseSensitive": False, "removeAccents": True},
        },
    }


def v2_record(content: str, created_at: str = CREATED_AT, updated_at: str = UPDATED_AT) -> dict[str, str]:
    return {"content": content, "createdAt": created_at, "updatedAt": updated_at}


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(db_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = db_factory()
    yield session
    session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", import_chunk_size=500)


@pytest.fixture
def sessions(db: Session, settings: Settings) -> ImportSessionStore:
    return ImportSessionStore.from_settings(db, settings)


@pytest.fixture
def publisher() -> ProgressPublisher:
    return ProgressPublisher()


@pytest.fixture
def client(
    db_factory: sessionmaker[Session],
    settings: Settings,
    publisher: ProgressPublisher,
) -> Generator[TestClient, None, None]:
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: db_factory
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_publisher] = lambda: publisher
    yield TestClient(app, headers={"X-Owner-Id": OWNER})
    app.dependency_overrides.clear()


@pytest.fixture
def records_factory() -> Callable[..., list[ImportRecord]]:
    return make_records
