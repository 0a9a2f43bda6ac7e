"""
Shared fixtures for the KYC case pipeline tests.

Every test gets its own in-memory SQLite database. StaticPool keeps the
single connection alive for the lifetime of the engine, and foreign keys
are switched on so cascades and FK violations behave like PostgreSQL.
"""

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from database.connection import create_test_provider
from database.monitoring import reset_metrics
from database.repositories import UserRepository


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    yield engine
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    """Provider bound to the test engine, with all tables created."""
    provider = create_test_provider(engine=engine)
    provider.init()
    provider.create_tables()
    yield provider
    provider.close()


@pytest.fixture
def session(db_provider):
    session = db_provider.get_session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def config(tmp_path):
    """Configuration with built-in defaults (no config.yaml)."""
    ConfigManager.reset_instance()
    yield ConfigManager(str(tmp_path / "absent.yaml"))
    ConfigManager.reset_instance()


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


def _make_user(session, email):
    user = UserRepository(session).create(email=email, credential_hash="!", display_name=email.split("@")[0])
    # Committed so a service rollback inside a test cannot remove the owner
    session.commit()
    return user


@pytest.fixture
def owner(session):
    return _make_user(session, "analyst@example.com")


@pytest.fixture
def other_owner(session):
    return _make_user(session, "other.analyst@example.com")
