"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["REALTIME_REDIS_URL"] = ""

from duochat.realtime.hub import ChatHub

from app.main import app
from app.models import Base
from app.services.chat import get_chat_hub, get_message_store
from app.services.message_store import SqlMessageStore


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def message_store(session_factory) -> SqlMessageStore:
    return SqlMessageStore(session_factory)


@pytest.fixture()
def hub(message_store) -> ChatHub:
    """A local-only hub backed by the in-memory store."""

    return ChatHub(message_store)


@pytest.fixture()
def client(hub, message_store) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient wired to an isolated hub and store."""

    app.dependency_overrides[get_chat_hub] = lambda: hub
    app.dependency_overrides[get_message_store] = lambda: message_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
