"""Database engine utilities for SQLAlchemy.

This module centralizes engine initialization for the pgvector-backed index:
- get_engine: Lazily created, process-wide engine bound to settings.DATABASE_URL.
- dispose_engine: Teardown hook (tests, worker shutdown).
- ensure_extension: Ensures the pgvector extension exists.
"""
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from archive_rag.config import settings

_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Return the shared engine, creating it on first use.

    Returns:
        Engine: Pooled engine with pre-ping so stale connections are replaced.
    """
    global _engine
    if _engine is None:
        _engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the shared engine."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def ensure_extension(engine: Engine) -> None:
    """Enable the pgvector extension. Idempotent."""
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()
