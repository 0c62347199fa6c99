"""FailureLogEntry model: append-only diagnostics for failed crawl work.

Written by the scrape runner and consumed by the self-healing loop, which
stamps `handled_at` once it has acted on a blocking entry.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql.sqltypes import Enum as SAEnum

from app.core.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class FailureType(str, Enum):
    NO_EVENTS_FOUND = "no_events_found"
    SELECTOR_FAILED = "selector_failed"
    PARSE_ERROR = "parse_error"
    FETCH_ERROR = "fetch_error"
    RATE_LIMITED = "rate_limited"


BLOCKING_STATUS_CODES = frozenset({401, 403, 429})
ZERO_YIELD_TYPES = (FailureType.NO_EVENTS_FOUND, FailureType.SELECTOR_FAILED)


class FailureLogEntry(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    __tablename__ = "scraper_failures"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_scraper_failures_source_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    error_type: Mapped[FailureType] = mapped_column(
        SAEnum(FailureType, name="scraper_failure_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    blocked: Mapped[bool] = mapped_column(default=False, nullable=False)
    events_expected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    strategy_trace: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    handled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_scraper_failures_source_created", "source_id", "created_at"),
        Index("ix_scraper_failures_unhandled", "error_type", "handled_at"),
    )

    @property
    def is_blocking(self) -> bool:
        if self.error_type not in (FailureType.FETCH_ERROR, FailureType.RATE_LIMITED):
            return False
        return bool(self.blocked) or self.status_code in BLOCKING_STATUS_CODES
