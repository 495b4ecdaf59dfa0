import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base
from app.services.reply_engine import InMemoryMessageHistory, InMemoryReplyLogStore, InMemoryStateStore, ReplyEngine


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def sql_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def sql_session(sql_engine):
    """Real SQLAlchemy session on an in-memory SQLite database."""
    session = sessionmaker(bind=sql_engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def history():
    return InMemoryMessageHistory()


@pytest.fixture
def log_store():
    return InMemoryReplyLogStore()


@pytest.fixture
def engine(state_store, history, log_store):
    return ReplyEngine(state_store=state_store, history=history, log_store=log_store)


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("REPLY_ENGINE_ADMIN_TOKEN", "test-admin-token")
