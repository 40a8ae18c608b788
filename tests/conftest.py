"""
Test configuration and fixtures for the A11y Audit Engine.

Every test session runs against throwaway SQLite files: the API and the
default worker session factory share one file, and queue tests get a fresh
file of their own per test.
"""

import os
import tempfile
from typing import Generator

from dotenv import load_dotenv

load_dotenv()

test_db_url = os.getenv("TEST_DATABASE_URL")
if test_db_url:
    if "postgresql://" in test_db_url and "asyncpg" not in test_db_url:
        test_db_url = test_db_url.replace("postgresql://", "postgresql+asyncpg://")
    os.environ["DATABASE_URL"] = test_db_url
else:
    test_db_path = tempfile.mktemp(suffix=".db")
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{test_db_path}"

os.environ["PUBLISH_PROGRESS"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.features.scan import models  # noqa: E402,F401
from app.platform.db.base import Base  # noqa: E402
from app.platform.db.session import create_sync_engine, get_sync_session_factory  # noqa: E402
from app.platform.utils.url_safety import UrlSafetyFilter  # noqa: E402

PUBLIC_IP = "93.184.216.34"


def public_resolver(host):
    return [PUBLIC_IP]


@pytest.fixture
def safety() -> UrlSafetyFilter:
    """Safety filter that resolves every hostname to a public address without DNS."""
    return UrlSafetyFilter(resolver=public_resolver)


@pytest.fixture
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Fresh file-backed SQLite database for one test."""
    engine = create_sync_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def app_db() -> Generator[sessionmaker, None, None]:
    """The database the API and default workers use, emptied around each test."""
    factory = get_sync_session_factory()
    engine = factory.kw["bind"]
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield factory
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="session")
def test_app():
    """Create FastAPI test application."""
    from app.main import app

    return app


@pytest.fixture(scope="function")
def client(test_app, app_db, monkeypatch) -> Generator[TestClient, None, None]:
    """
    Test client with an empty database, no broker and no real DNS.
    """
    from app.features.scan.services.scan import scan_service

    monkeypatch.setattr(scan_service, "kick_workers", lambda: False)
    monkeypatch.setattr(
        scan_service, "UrlSafetyFilter", lambda: UrlSafetyFilter(resolver=public_resolver)
    )

    with TestClient(test_app) as test_client:
        yield test_client
