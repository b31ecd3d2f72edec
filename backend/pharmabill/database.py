"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory, plus the FastAPI
    dependency and context manager used to obtain sessions.

WHY:
    The subscription engine serializes mutations per subscription with
    thread-level locks, so every write path runs on sync sessions: FastAPI
    sync dependencies for routers, `get_sync_session()` for the arq worker.

USAGE:
    from pharmabill.database import SessionLocal, get_db

    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - pharmabill/routers/ (consumers of these sessions)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from pharmabill.utils.env import require_env


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    return require_env("DATABASE_URL")


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

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


# Base is defined in pharmabill.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            subscriptions = db.query(Subscription).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
