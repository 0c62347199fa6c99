"""StagingEvent model: one raw capture moving through enrichment and indexing.

Dedupe keys:
- `content_hash` is unique among non-failed rows (cross-source, first writer wins).
- `(source_id, event_fingerprint)` is unique (a source never re-emits an item).

Terminal rows (`processed`, `failed`) are immutable; the `before_update`
listener below rejects any further change.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql.sqltypes import Enum as SAEnum

from app.core.base import Base, CreatedAtMixin, JSONType, UpdatedAtMixin, UUIDPrimaryKeyMixin


class TerminalStateError(RuntimeError):
    """Raised when a processed/failed staging record is modified."""


class PipelineStatus(str, Enum):
    DISCOVERED = "discovered"
    AWAITING_ENRICHMENT = "awaiting_enrichment"
    ENRICHING = "enriching"
    ENRICHED = "enriched"
    READY_TO_INDEX = "ready_to_index"
    INDEXING = "indexing"
    PROCESSED = "processed"
    FAILED = "failed"


TERMINAL_PIPELINE_STATUSES = frozenset({PipelineStatus.PROCESSED, PipelineStatus.FAILED})


class StagingEvent(UUIDPrimaryKeyMixin, CreatedAtMixin, UpdatedAtMixin, Base):
    __tablename__ = "staging_events"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_staging_events_source_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("scrape_jobs.id", name="fk_staging_events_job_id", ondelete="SET NULL"),
        nullable=True,
    )

    pipeline_status: Mapped[PipelineStatus] = mapped_column(
        SAEnum(PipelineStatus, name="pipeline_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PipelineStatus.DISCOVERED,
    )

    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    event_date: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    raw_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_fields: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    parsing_method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    parsing_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    event_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    structured_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    enrichment_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    leased_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    published_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("source_id", "event_fingerprint", name="uq_staging_events_source_fingerprint"),
        Index(
            "uq_staging_events_content_hash_active",
            "content_hash",
            unique=True,
            postgresql_where=text("pipeline_status <> 'failed'"),
            sqlite_where=text("pipeline_status <> 'failed'"),
        ),
        Index("ix_staging_events_status_created", "pipeline_status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.pipeline_status in TERMINAL_PIPELINE_STATUSES

    def __repr__(self) -> str:
        return f"<StagingEvent {self.id} {self.pipeline_status.value} {self.title[:40]!r}>"


@event.listens_for(StagingEvent, "before_update", propagate=True)
def _staging_event_prevent_terminal_updates(mapper, connection, target) -> None:
    """Reject updates to rows whose persisted status is terminal."""
    state = inspect(target)
    if not state.persistent:
        return
    hist = state.attrs.pipeline_status.history
    if hist.deleted:
        previous = hist.deleted[0]
    elif hist.added:
        # previous value was never loaded into this session
        return
    else:
        previous = target.pipeline_status
    if previous in TERMINAL_PIPELINE_STATUSES:
        raise TerminalStateError(
            f"StagingEvent {target.id} is terminal ({previous.value}); it cannot be modified."
        )
