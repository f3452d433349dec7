"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory.
    Exposes a FastAPI dependency for database access.

WHY:
    Webhook ingestion relies on the store for its guarantees: the unique
    event-id constraint is the idempotency primitive and one transaction
    per event keeps reconciliation and event bookkeeping consistent. Every
    caller therefore goes through the same session factory.

USAGE:
    # FastAPI endpoints
    from app.database import get_db

    @router.post("/webhook")
    async def webhook(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_transaction.html
    - app/services/webhook_idempotency.py (atomic insert-if-absent)
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string (PostgreSQL in production, SQLite in tests)

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from app.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku-style URLs are rejected by SQLAlchemy 2.x
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool configuration for production performance:
# - pool_size: Number of persistent connections to maintain
# - max_overflow: Additional connections allowed beyond pool_size during load spikes
# - pool_recycle: Recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: Check connection health before use
#
# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
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


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

# Base is defined in app.models to ensure a single registry across the app
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    The session is closed after the request; transactions are committed or
    rolled back explicitly by the service that owns them.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

