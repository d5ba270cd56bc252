"""Database session and base configuration.

WHAT:
    Sync SQLAlchemy engine and session factory, plus the FastAPI dependency
    and a context manager for workers.

WHY:
    The sync pipeline is I/O bound on provider APIs, not on the database.
    Plain sync sessions are shared by routes, arq jobs and tests; the
    orchestrator opens one session per connection attempt.

USAGE:
    from bizhealth.database import SessionLocal, get_db, get_sync_session
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from bizhealth.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()

# SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in bizhealth.models to ensure a single registry across the app
from .models import Base  # noqa: E402


def init_db() -> None:
    """Create missing tables on the configured engine."""
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a sync database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sync sessions outside FastAPI.

    Example:
        with get_sync_session() as db:
            connection = db.get(Connection, connection_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
