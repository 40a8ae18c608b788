from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.platform.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQLite serialises writers; wait for the lock instead of failing a claim
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_size": 20,
        "max_overflow": 30,  # (burst capacity)
        "pool_timeout": 30,
    }


def _enable_sqlite_foreign_keys(engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True,
    **_engine_options(settings.DATABASE_URL),
)
if settings.DATABASE_URL.startswith("sqlite"):
    _enable_sqlite_foreign_keys(engine.sync_engine)

SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, autocommit=False)


async def get_db():
    async with SessionLocal() as session:
        yield session


# Sync engine for worker processes and Celery tasks, created on first use
_sync_engine = None
_sync_session_factory = None


def create_sync_engine(url: str):
    sync_engine = create_engine(url, **_engine_options(url))
    if url.startswith("sqlite"):
        _enable_sqlite_foreign_keys(sync_engine)
    return sync_engine


def get_sync_session_factory() -> sessionmaker:
    global _sync_engine, _sync_session_factory

    if _sync_session_factory is None:
        _sync_engine = create_sync_engine(settings.sync_database_url)
        _sync_session_factory = sessionmaker(
            bind=_sync_engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
    return _sync_session_factory


@contextmanager
def sync_session_scope(session_factory: sessionmaker = None):
    """Transactional scope for worker code: commit on success, roll back on error."""
    factory = session_factory or get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
