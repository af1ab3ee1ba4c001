"""Engine and session factory configuration."""

from collections.abc import Generator
from functools import lru_cache
import logging

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from recordkeeper.core.config import get_settings

logger = logging.getLogger(__name__)


def configure_sqlite_transactions(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN/SAVEPOINT on pysqlite connections.

    The sqlite3 driver otherwise issues its own implicit transactions, which breaks
    the per-record SAVEPOINTs used inside import chunks.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine tuned for the backend behind ``database_url``."""
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, echo=False, future=True, **kwargs)
        configure_sqlite_transactions(engine)
        return engine

    # pool_pre_ping: Test connections before using (handles stale connections)
    # pool_recycle: Recycle connections after 30 minutes (prevents timeout)
    return create_engine(
        database_url,
        echo=False,
        future=True,
        poolclass=QueuePool,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_size=5,
        max_overflow=10,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
        **kwargs,
    )


@lru_cache
def get_engine() -> Engine:
    return build_engine(get_settings().database_url)


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_fresh_session(factory: sessionmaker[Session] | None = None) -> Session:
    """Get a fresh database session, handling connection errors.

    Background imports and exports outlive the request that started them, so they
    open their own session through this helper.
    """
    factory = factory or get_session_factory()
    try:
        return factory()
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Connection error creating session: {e}, retrying...")
        factory.kw["bind"].dispose()
        return factory()


def get_db(factory: sessionmaker[Session] | None = None) -> Generator[Session, None, None]:
    """Yield a transactional session for request lifecycles."""
    db = (factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
