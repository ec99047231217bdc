"""Engine and session management for the logbook database.

SQLite is used by default for local development; PostgreSQL is selected by
pointing ``LOGBOOK_DATABASE_URL`` (or ``DATABASE_URL``) at a server.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings
from .models import Base

LOGGER = logging.getLogger(__name__)

_ENGINE: Optional[Engine] = None
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False, future=True)


def _create_engine() -> Engine:
    settings = get_database_settings()
    engine = create_engine(settings.url, future=True, **settings.engine_options())
    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):  # type: ignore[override]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_engine() -> Engine:
    """Return the process wide engine, creating it on first use."""

    global _ENGINE
    if _ENGINE is None:
        _ENGINE = _create_engine()
        SessionLocal.configure(bind=_ENGINE)
    return _ENGINE


def configure_engine(engine: Engine) -> None:
    """Bind the session factory to *engine* (used by tests and scripts)."""

    global _ENGINE
    _ENGINE = engine
    SessionLocal.configure(bind=engine)


def initialise_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables and seed reference data."""

    from .seed import seed_reference_data

    target = engine or get_engine()
    Base.metadata.create_all(target)
    with session_scope() as session:
        seed_reference_data(session)
    LOGGER.info("schema_initialised")


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context manager yielding a session that commits on success."""

    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Iterator[Session]:
    """FastAPI dependency yielding a request scoped session."""

    with session_scope() as session:
        yield session


__all__ = [
    "SessionLocal",
    "configure_engine",
    "get_engine",
    "get_session",
    "initialise_schema",
    "session_scope",
]
