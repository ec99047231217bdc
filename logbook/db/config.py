"""Database URL and engine option resolution.

``LOGBOOK_DATABASE_URL`` (or the generic ``DATABASE_URL``) selects any
SQLAlchemy URL. Without one the logbook lives in a SQLite file under the
per-user data directory, or under ``LOGBOOK_DB_PATH`` when that is set.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir

from logbook.config import APP_NAME

DB_FILENAME = "logbook.db"

# Environment variable -> create_engine keyword, applied when set.
_POOL_ENV = (("DB_POOL_SIZE", "pool_size"), ("DB_MAX_OVERFLOW", "max_overflow"))


def _int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql", "postgres"))

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo}
        for env_name, option in _POOL_ENV:
            value = _int_env(env_name)
            if value is not None:
                options[option] = value

        if self.is_sqlite:
            # Request handlers run in a thread pool.
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            options["pool_pre_ping"] = True
            connect_args: Dict[str, object] = {"options": "-c timezone=UTC"}
            timeout = _int_env("PGCONNECT_TIMEOUT")
            if timeout is not None:
                connect_args["connect_timeout"] = timeout
            options["connect_args"] = connect_args
        return options


def _sqlite_file(path_override: Optional[str]) -> Path:
    if path_override:
        target = Path(path_override).expanduser()
        if target.is_dir():
            target = target / DB_FILENAME
    else:
        target = Path(user_data_dir(APP_NAME, APP_NAME)) / DB_FILENAME
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def _with_psycopg_driver(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the database settings for the current environment."""

    echo = os.getenv("LOGBOOK_DB_ECHO", "").lower() in {"1", "true", "yes"}
    url = os.getenv("LOGBOOK_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=_with_psycopg_driver(url), echo=echo)
    db_file = _sqlite_file(os.getenv("LOGBOOK_DB_PATH"))
    return DatabaseSettings(url=f"sqlite:///{db_file}", echo=echo)


__all__ = ["DatabaseSettings", "get_database_settings"]
