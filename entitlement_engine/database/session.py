"""
Database session management with connection pooling.

Shared by the event processors, the scheduled reconciler and the deposit
listener. Uses SQLAlchemy with connection pooling for production workloads
and a single shared connection for in-memory SQLite.

Usage:
    from entitlement_engine.database.session import get_session_factory

    SessionLocal = get_session_factory()
    with SessionLocal() as session:
        ...
"""

import os
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Handles Render's postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # Handle Render's postgres:// URL format (SQLAlchemy requires postgresql://)
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for a URL.

    In-memory SQLite shares one connection across threads; everything else
    gets a pre-pinged QueuePool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connection health
        pool_recycle=1800,   # Recycle connections after 30 minutes
    )


def get_engine() -> Engine:
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(_get_database_url())
            logger.info("Database engine created with connection pooling")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine
        )
    return _SessionLocal


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""
    from entitlement_engine.db_base import Base
    from entitlement_engine import models  # noqa: F401 - register tables

    Base.metadata.create_all(bind=engine or get_engine())
