"""ScrapeJob model: one scheduled crawl attempt for one Source.

Jobs form an append-only log. `failed` is the dead-letter state reached once
`attempts` hits `max_attempts`; `pending`/`processing` jobs always satisfy
`attempts < max_attempts`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql.sqltypes import Enum as SAEnum

from app.core.base import Base, CreatedAtMixin, JSONType, UUIDPrimaryKeyMixin


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ScrapeJob(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    __tablename__ = "scrape_jobs"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_scrape_jobs_source_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, name="scrape_job_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    events_scraped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_inserted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_deduplicated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    strategy: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(nullable=True)

    error_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_scrape_jobs_attempts_ceiling"),
        Index("ix_scrape_jobs_claim_order", "status", "priority", "created_at"),
        Index("ix_scrape_jobs_processing_started", "status", "started_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def __repr__(self) -> str:
        return f"<ScrapeJob {self.id} status={self.status.value} attempts={self.attempts}/{self.max_attempts}>"
