import os
import sys
from dataclasses import dataclass
from typing import Dict, Iterator

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the logbook package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("USE_OFFLINE_MODEL", None)

from logbook import key_manager  # noqa: E402
from logbook.auth import register_user  # noqa: E402
from logbook.config import get_settings  # noqa: E402
from logbook.db import configure_engine, initialise_schema, session_scope  # noqa: E402
from logbook.db.models import Department, QuotaTask  # noqa: E402
from logbook.security import create_access_token  # noqa: E402


@dataclass
class Account:
    id: str
    email: str
    role: str
    token: str

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(autouse=True)
def no_keyring(monkeypatch):
    """Keep the OS keyring out of tests; AI calls fall back unless patched."""

    monkeypatch.setattr(key_manager.keyring, "get_password", lambda *args: None)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("USE_OFFLINE_MODEL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine() -> Iterator[sa.engine.Engine]:
    """Provide an isolated, seeded in-memory SQLite database for each test."""

    engine = sa.create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_engine(engine)
    initialise_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session(engine):
    with session_scope() as session:
        yield session


def make_account(email: str, role: str, password: str = "password123") -> Account:
    with session_scope() as session:
        user = register_user(session, email, password, role, full_name=email.split("@")[0].title())
        user_id = user.id
    return Account(
        id=user_id,
        email=email,
        role=role,
        token=create_access_token(user_id, role, email),
    )


@pytest.fixture
def admin(engine) -> Account:
    return make_account("admin@school.edu", "admin")


@pytest.fixture
def instructor(engine) -> Account:
    return make_account("instructor@school.edu", "instructor")


@pytest.fixture
def student(engine) -> Account:
    return make_account("student@school.edu", "student")


@pytest.fixture
def other_student(engine) -> Account:
    return make_account("other@school.edu", "student")


@pytest.fixture
def client(engine) -> Iterator[TestClient]:
    from logbook import main

    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def reference(engine) -> Dict[str, Dict[str, str]]:
    """Map department names to ids and task names to ids."""

    with session_scope() as session:
        departments = {d.name: d.id for d in session.execute(sa.select(Department)).scalars()}
        tasks = {t.task_name: t.id for t in session.execute(sa.select(QuotaTask)).scalars()}
    return {"departments": departments, "tasks": tasks}
