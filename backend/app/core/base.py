"""SQLAlchemy declarative base and shared mixins.

Conventions:
- UUID primary keys are generated by the application so rows can be referenced
  by workers before the INSERT is flushed.
- Timestamps are timezone-aware UTC. Column types stay portable (generic `Uuid`,
  `JSON` with a `JSONB` variant) so the same mappings run on PostgreSQL in
  production and on SQLite in the test-suite.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.core.clock import utcnow


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class UUIDPrimaryKeyMixin:
    """UUID primary key mixin (application-generated)."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )


class CreatedAtMixin:
    """Created-at timestamp mixin (UTC timestamptz).

    The Python-side default keeps microsecond resolution, which the claim
    ordering `(priority desc, created_at asc)` relies on; the server default
    covers rows written by hand or by migrations.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


class UpdatedAtMixin:
    """Updated-at timestamp mixin (UTC timestamptz)."""

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        onupdate=utcnow,
    )
