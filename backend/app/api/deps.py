"""API dependencies.

- One transaction per request: committed when the endpoint returns, rolled back
  when it raises (including HTTPException).
"""

from __future__ import annotations

from collections.abc import Generator

from sqlalchemy.orm import Session

from app.core.db import get_session_factory
from app.core.settings import PipelineSettings, get_settings


def get_db_session() -> Generator[Session, None, None]:
    """Provide a transactional session for request scope."""
    with get_session_factory().begin() as session:
        yield session


def get_pipeline_settings() -> PipelineSettings:
    return get_settings()
