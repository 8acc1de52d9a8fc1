"""
Database engine and session management.

Provides:
- get_db_session: FastAPI dependency yielding a request-scoped session
- session_scope: commit/rollback context manager for background jobs

The approval state machine relies on the database for atomicity
(compare-and-set UPDATEs and increment-and-check counters), so every
request and job runs inside exactly one session/transaction.

Configuration:
- DATABASE_URL: required (postgres:// is normalized to postgresql://)
- DB_POOL_SIZE: pooled connections (default: 5)
- DB_MAX_OVERFLOW: extra connections under load (default: 10)
"""

import logging
import os
from contextlib import contextmanager
from typing import AsyncIterator, Iterator

from fastapi import HTTPException, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # SQLAlchemy requires the postgresql:// scheme
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine() -> Engine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        database_url = _get_database_url()
        if database_url.startswith("sqlite"):
            _engine = create_engine(database_url, connect_args={"check_same_thread": False})
        else:
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
                max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


async def get_db_session() -> AsyncIterator[Session]:
    """
    FastAPI dependency for database sessions.

    Routes commit explicitly after a successful service call; anything
    left uncommitted is rolled back when the session closes.
    Raises HTTP 503 if the database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Transactional scope for background jobs.

    Usage:
        with session_scope() as session:
            worker = ExecutionRetryWorker(session)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
