"""
Pytest configuration and fixtures.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from audit_engine.api.deps import get_engine
from audit_engine.core.database import Base, get_db, init_db
from audit_engine.main import app
from audit_engine.services.engine import AuditEngine
from audit_engine.services.integrity_service import IntegrityService

from helpers import RecordingTransport

# Models cleaned between tests
from audit_engine.models import (
    ActivityLog,
    ArchivedActivity,
    RetentionPolicy,
    RetentionRun,
    NotificationRule,
    AlertGroup,
    APIKey,
)

# Use file-based SQLite for testing (more reliable than in-memory)
TEST_DATABASE_URL = "sqlite:///./test_audit_engine.db"

SIGNING_KEY = "test-signing-key"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    pool_pre_ping=False,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """
    Create all tables before tests run and drop them after the session.
    """
    init_db(test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def clean_tables():
    """Each test starts from empty tables."""
    yield
    db = TestingSessionLocal()
    try:
        for model in (ActivityLog, ArchivedActivity, RetentionPolicy, RetentionRun, NotificationRule, AlertGroup, APIKey):
            db.execute(delete(model))
        db.commit()
    finally:
        db.close()


@pytest.fixture(scope="function", autouse=True)
def disable_api_key():
    """Disable API key authentication for all tests."""
    with patch("audit_engine.core.config.settings.API_KEY", None):
        yield


@pytest.fixture(scope="function")
def session_factory():
    return TestingSessionLocal


@pytest.fixture(scope="function")
def integrity():
    return IntegrityService(SIGNING_KEY)


@pytest.fixture(scope="function")
def log_transport():
    return RecordingTransport()


@pytest.fixture(scope="function")
def audit_engine(integrity, log_transport):
    """Engine wired to the test database with an in-memory transport for the 'log' channel."""
    return AuditEngine(
        session_factory=TestingSessionLocal,
        integrity=integrity,
        transports={"log": log_transport},
        group_store_backend="memory",
    )


def _override_get_db():
    """Override get_db dependency to use test database session."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(audit_engine):
    """
    Test client on the test database with authentication disabled.
    """
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_engine] = lambda: audit_engine

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client_with_auth(audit_engine):
    """
    Test client with API key authentication enabled (API_KEY="test-key").
    """
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_engine] = lambda: audit_engine

    with patch("audit_engine.core.config.settings.API_KEY", "test-key"):
        yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def db_session():
    """
    Provide a database session for tests that need direct DB access.
    """
    db = TestingSessionLocal()
    try:
        yield db
        db.rollback()
    finally:
        db.close()
