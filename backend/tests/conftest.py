from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/app` is importable as top-level `app` for tests.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import app.models  # noqa: E402,F401
from app.core.base import Base  # noqa: E402
from app.core.db import create_db_engine, make_session_factory  # noqa: E402
from app.core.settings import PipelineSettings  # noqa: E402
from app.models.source import Source  # noqa: E402


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """File-backed SQLite so API tests (threadpool) and workers see the same database."""
    engine = create_db_engine(f"sqlite+pysqlite:///{tmp_path / 'pipeline.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Session per test; committed state is discarded with the database file."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def settings() -> PipelineSettings:
    return PipelineSettings()


@pytest.fixture()
def make_source() -> Callable[..., Source]:
    def _make(session: Session, **overrides: Any) -> Source:
        fields: dict[str, Any] = {
            "name": f"Agenda {uuid.uuid4().hex[:6]}",
            "url": f"https://agenda-{uuid.uuid4().hex[:8]}.example.nl/agenda",
            "tier": 2,
        }
        fields.update(overrides)
        source = Source(**fields)
        session.add(source)
        session.flush()
        return source

    return _make


@pytest.fixture()
def postgres_url() -> str:
    url = os.environ.get("DATABASE_URL") or ""
    if not url.startswith("postgresql"):
        pytest.skip("DATABASE_URL is not a PostgreSQL URL; skipping concurrency tests.")
    return url
