"""Database helpers for the logbook service."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import (
    SessionLocal,
    configure_engine,
    get_engine,
    get_session,
    initialise_schema,
    session_scope,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "SessionLocal",
    "configure_engine",
    "get_engine",
    "get_session",
    "initialise_schema",
    "session_scope",
]
