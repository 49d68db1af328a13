"""Engine and session factory for the escrow database.

Transitions rely on ``expire_on_commit=False`` so committed milestones and
escrows stay readable after their transaction closes; state machine commands
reload rows with ``populate_existing`` when they need fresh state.
"""
from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from freelance_escrow.config import get_settings
from freelance_escrow.models.base import Base

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _engine_kwargs(database_url: str) -> dict[str, object]:
    if database_url.startswith("sqlite"):
        # Scheduler jobs and request handlers share the file from different threads.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def init_engine(database_url: str | None = None) -> Engine:
    """Create the engine and session factory on first use."""

    global _engine, _session_factory
    if _engine is None:
        url = database_url or get_settings().database_url
        _engine = create_engine(url, echo=False, **_engine_kwargs(url))
        _session_factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine


def get_engine() -> Engine:
    return _engine if _engine is not None else init_engine()


def get_sessionmaker() -> sessionmaker[Session]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for work outside a request, such as the periodic sweeps."""

    session = get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # pragma: no cover
    # Escrows and outbox events reference milestones; SQLite only checks that when asked.
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_all() -> None:
    """Build the schema from model metadata (dev and test only; use Alembic elsewhere)."""

    Base.metadata.create_all(bind=get_engine())


def close_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding one session per request."""

    with session_scope() as session:
        yield session


__all__ = [
    "close_engine",
    "create_all",
    "get_db",
    "get_engine",
    "get_sessionmaker",
    "init_engine",
    "session_scope",
]
