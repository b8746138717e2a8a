"""Database engine builder.

Pool policy:
- Default: NullPool (pgbouncer/transaction pooler friendly)
- DB_POOL=queuepool: client-side QueuePool (DB_POOL_SIZE, DB_MAX_OVERFLOW)
- SQLite: StaticPool for in-memory URLs so every session shares one connection
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def build_engine(database_url: str) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If the URL is empty or DB_POOL has an unknown value.
    """
    if not database_url:
        raise ValueError("database_url is required")

    if _is_sqlite(database_url):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(database_url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
    else:
        connect_args: dict[str, Any] = {
            "application_name": os.getenv("DB_APPLICATION_NAME", "billsync-api"),
        }
        pool_mode = os.getenv("DB_POOL", "nullpool").lower()

        if pool_mode == "nullpool":
            engine = create_engine(
                database_url,
                poolclass=NullPool,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        elif pool_mode == "queuepool":
            engine = create_engine(
                database_url,
                pool_pre_ping=True,
                pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
                max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
                connect_args=connect_args,
            )
        else:
            raise ValueError(
                f"Invalid DB_POOL value: {pool_mode}. Must be 'nullpool' or 'queuepool'."
            )

    logger.debug(
        "Database engine created",
        extra={
            "event": "db.engine.created",
            "pool": engine.pool.__class__.__name__,
            "url": _mask_password(database_url),
        },
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """
    Build SQLAlchemy sessionmaker.

    Args:
        engine: SQLAlchemy Engine instance.

    Returns:
        sessionmaker configured with autocommit=False, autoflush=False and
        expire_on_commit=False (accounts are read back after commit).
    """
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
