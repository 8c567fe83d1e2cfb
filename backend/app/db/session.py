# backend/app/db/session.py
from __future__ import annotations

"""
Database session and Base ORM declarations.

This module depends on:
- app.config.settings.get_settings for the DATABASE_URL
It is imported by:
- app.models (for Base)
- app.main (for engine/Base)
- the report format services (via the `transaction` helper)
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.config import get_settings

# Load settings once; get_settings() is cached in app.config.settings
settings = get_settings()

if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
else:
    connect_args = {}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    future=True,
)

# Session factory used throughout the app
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
)

# Base class for all ORM models
Base = declarative_base()


def get_db():
    """
    FastAPI dependency that yields a DB session and ensures it is closed.

    Example usage in a route:
        from app.db.session import get_db
        def endpoint(db: Session = Depends(get_db)): ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one unit of work: commit on success, roll back on any
    exception (which is re-raised).

    Every public report format operation wraps its relational work in this,
    so nothing is ever partially committed.
    """
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
