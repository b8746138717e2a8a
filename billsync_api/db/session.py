"""Database session management.

The engine and session factory are process-wide resources: built once on
first use behind a lock, never per request.
"""

import threading
from typing import Generator, Optional

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from billsync_api.config.env import get_database_url
from billsync_api.db.engine import build_engine, build_sessionmaker

_lock = threading.Lock()
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker[Session]] = None


def configure_database(database_url: Optional[str] = None) -> sessionmaker[Session]:
    """(Re)build the process-wide engine and session factory.

    Args:
        database_url: Explicit URL; defaults to DATABASE_URL resolution.

    Returns:
        The new session factory.
    """
    global _engine, _session_factory

    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = build_engine(database_url or get_database_url())
        _session_factory = build_sessionmaker(_engine)
        return _session_factory


def get_engine() -> Engine:
    """Get the process-wide engine, building it on first use."""
    if _engine is None:
        get_session_factory()
    assert _engine is not None
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Get the process-wide session factory (lazy init-once)."""
    global _engine, _session_factory

    if _session_factory is None:
        with _lock:
            if _session_factory is None:
                _engine = build_engine(get_database_url())
                _session_factory = build_sessionmaker(_engine)
    return _session_factory


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
