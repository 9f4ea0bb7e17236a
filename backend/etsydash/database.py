"""Database engine, session factory and FastAPI dependency.

WHAT:
    Builds the SQLAlchemy engine from DATABASE_URL and exposes `SessionLocal`
    (used directly by the ARQ worker) and the `get_db` dependency.

WHY:
    Sync orchestration, analytics and routers all share one sync Session
    model. Each sync unit commits on its own, so there is no need for an
    async engine.

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - etsydash/workers/arq_worker.py (non-FastAPI consumer)
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from etsydash.utils.env import load_env_file
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

# SQLite (tests/dev) does not accept pool_size/max_overflow.
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


# Base is defined in etsydash.models to keep a single registry
from .models import Base  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

