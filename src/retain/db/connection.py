"""
Database connection management for Retain.

Provides engine construction for the local SQLite store, session factories,
and transaction-scoped session handling.

Every transaction is opened with ``BEGIN IMMEDIATE`` so that it holds the
SQLite writer lock from its first statement; a multi-step mutation such as a
queue claim (select candidates, then conditionally update them) therefore
cannot interleave with another writer.
"""

import logging
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from retain.config import settings
from retain.models.db import Base

logger = logging.getLogger(__name__)


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def _install_sqlite_pragmas(engine: Engine, busy_timeout_ms: int) -> None:
    """Configure WAL, lock waiting, foreign keys and immediate transactions."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        # Hand transaction control to SQLAlchemy; BEGIN is emitted in _on_begin
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(
    url: Optional[str] = None,
    echo: Optional[bool] = None,
    busy_timeout_ms: Optional[int] = None,
) -> Engine:
    """
    Create an engine for the Retain store.

    Args:
        url: SQLAlchemy URL (defaults to ``settings.database_url``)
        echo: Log SQL statements (defaults to ``settings.database_echo``)
        busy_timeout_ms: How long a writer waits for the lock before failing

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    url = url or settings.database_url
    echo = settings.database_echo if echo is None else echo
    busy_timeout_ms = (
        settings.database_busy_timeout_ms if busy_timeout_ms is None else busy_timeout_ms
    )

    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs: dict = {
        "echo": echo,
        "connect_args": {
            "check_same_thread": False,
            "timeout": busy_timeout_ms / 1000,
        },
    }
    if _is_memory_url(url):
        # One shared connection, otherwise each checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    else:
        db_file = url.split("sqlite:///", 1)[-1]
        if db_file:
            Path(db_file).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)
    _install_sqlite_pragmas(engine, busy_timeout_ms)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@lru_cache(maxsize=1)
def get_default_engine() -> Engine:
    """Engine for the configured database, created on first use."""
    return create_db_engine()


@lru_cache(maxsize=1)
def get_default_session_factory() -> sessionmaker[Session]:
    """Session factory for the configured database, created on first use."""
    return create_session_factory(get_default_engine())


@contextmanager
def session_scope(
    session_factory: Optional[sessionmaker[Session]] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for one write transaction.

    Commits on success, rolls back on any exception and always closes.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with session_scope(factory) as db:
        >>>     AnalysisQueueRepository(db).enqueue(conversation_id, "learning")
    """
    factory = session_factory or get_default_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Create all tables and indexes that do not exist yet.

    Args:
        engine: Target engine (defaults to the configured database)
    """
    engine = engine or get_default_engine()
    Base.metadata.create_all(bind=engine)
    logger.info(f"Initialized database schema at {engine.url}")
