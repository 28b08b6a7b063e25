"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/mediarr_test_config"

# Ensure test config directory exists
Path("/tmp/mediarr_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import (  # noqa: F401 - registers tables
    Rule, QueueItem, Exclusion, WatchlistEntry, UserVelocity,
    JournalEntry, StatsDaily, TaskExecution,
)


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine):
    """Create a test database session."""
    # expire_on_commit=False allows accessing object attributes after commit/close
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    session = TestSessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def db(test_engine):
    """
    Point the database module at the in-memory engine.

    Stores, the journal and the task engine all call get_session() at call
    time, so the whole stack runs against the test database.
    """
    import database

    original_engine = database._engine
    original_session_local = database._SessionLocal
    database._engine = test_engine
    database._SessionLocal = sessionmaker(
        autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False
    )
    try:
        yield test_engine
    finally:
        database._engine = original_engine
        database._SessionLocal = original_session_local


@pytest.fixture
def settings():
    """Live-mode settings with no API pacing."""
    from config import MediarrSettings
    return MediarrSettings(
        dry_run=False,
        default_buffer_days=15,
        api_delay_ms=0,
        leaving_soon_collection="Leaving Soon",
    )


@pytest.fixture
def media():
    from tests.fixtures.fake_adapters import FakeMediaLibrary
    return FakeMediaLibrary()


@pytest.fixture
def orchestrator():
    from tests.fixtures.fake_adapters import FakeOrchestrator
    return FakeOrchestrator()


@pytest.fixture
def clock():
    from tests.fixtures.fake_adapters import FakeClock
    return FakeClock()


@pytest.fixture
def rules_engine(db, media, orchestrator, settings, clock):
    """A RulesEngine wired to the fake adapters and the test database."""
    from rules_engine import RulesEngine
    from run_coordinator import RunCoordinator
    from throttle import ApiThrottle

    return RulesEngine(
        media,
        orchestrator,
        settings=settings,
        throttle=ApiThrottle(delay_ms=0),
        coordinator=RunCoordinator(),
        clock=clock,
    )
