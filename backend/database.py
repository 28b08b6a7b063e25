"""
SQLite database setup for rules, the deferred action queue and the journal.
Uses SQLAlchemy with a single shared connection pool.
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR, get_env_settings

logger = logging.getLogger(__name__)

# Database file location
LIFECYCLE_DB_FILE = CONFIG_DIR / "mediarr.db"

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the database URL, preferring DATABASE_URL from the environment."""
    env_url = get_env_settings().database_url
    if env_url:
        return env_url
    return f"sqlite:///{LIFECYCLE_DB_FILE}"


def init_db(database_url: Optional[str] = None) -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        database_url = database_url or get_database_url()
        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Config directory ensured: {CONFIG_DIR}")

        logger.info(f"Initializing lifecycle database at {database_url}")

        connect_args = {}
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
            engine_kwargs["poolclass"] = StaticPool

        _engine = create_engine(
            database_url,
            connect_args=connect_args,
            echo=False,  # Set to True for SQL debugging
            **engine_kwargs,
        )
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        from models import (  # noqa: F401
            Rule, QueueItem, Exclusion, WatchlistEntry, UserVelocity,
            JournalEntry, StatsDaily, TaskExecution,
        )

        Base.metadata.create_all(bind=_engine)
        logger.debug("Database tables created/verified")

        logger.info("Lifecycle database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    if _engine is None:
        logger.error("Attempted to get database engine before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
