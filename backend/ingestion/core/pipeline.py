from __future__ import annotations

"""Pipeline state machine for staging records.

    discovered -> awaiting_enrichment -> enriching -> enriched -> ready_to_index -> indexing -> processed
                                          |   ^                                       |
                                          |   +-- retry (retry_count < limit)         +-> failed
                                          +-> failed

Rules:
- Transitions are forward-only; the single backwards edge is the enrichment
  retry. `processed` and `failed` are terminal and immutable.
- Staging only happens when both dedupe keys are free; a duplicate is counted,
  never raised.
- Enrichment and indexing claims use the same single-statement
  SKIP LOCKED lease as scrape jobs.
- Indexing never loops: any error other than a dedupe closes the record as
  `failed` with `last_error` populated.
"""

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import Update, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import PipelineSettings
from app.models.staging_event import PipelineStatus, StagingEvent
from ingestion.core.dedup import compute_content_hash, compute_event_fingerprint
from ingestion.core.errors import DuplicateEventError, InvalidTransitionError
from ingestion.core.publication import PublicationStore, PublishableEvent
from ingestion.extraction.dates import parse_time, parse_to_iso_date
from ingestion.extraction.types import EventCandidate

logger = logging.getLogger("lcl.ingestion.pipeline")

S = PipelineStatus

ALLOWED_TRANSITIONS: dict[PipelineStatus, frozenset[PipelineStatus]] = {
    S.DISCOVERED: frozenset({S.AWAITING_ENRICHMENT, S.FAILED}),
    S.AWAITING_ENRICHMENT: frozenset({S.ENRICHING, S.FAILED}),
    S.ENRICHING: frozenset({S.ENRICHED, S.AWAITING_ENRICHMENT, S.FAILED}),
    S.ENRICHED: frozenset({S.READY_TO_INDEX, S.FAILED}),
    S.READY_TO_INDEX: frozenset({S.INDEXING, S.FAILED}),
    S.INDEXING: frozenset({S.PROCESSED, S.FAILED}),
    S.PROCESSED: frozenset(),
    S.FAILED: frozenset(),
}

RETRY_JITTER = 0.2
INDEXING_LEASE_EXPIRED = "indexing lease expired"


@dataclass(slots=True)
class StageResult:
    inserted: int = 0
    deduplicated: int = 0
    record_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ClaimedRecord:
    """Detached view of a leased staging record for out-of-transaction work."""

    id: uuid.UUID
    source_id: uuid.UUID
    source_url: Optional[str]
    title: str
    event_date: Optional[str]
    raw_content: Optional[str]
    extracted_fields: dict[str, Any]
    retry_count: int

    @classmethod
    def from_record(cls, record: StagingEvent) -> "ClaimedRecord":
        return cls(
            id=record.id,
            source_id=record.source_id,
            source_url=record.source_url,
            title=record.title,
            event_date=record.event_date,
            raw_content=record.raw_content,
            extracted_fields=dict(record.extracted_fields or {}),
            retry_count=record.retry_count,
        )


def build_lease_statement(
    from_status: PipelineStatus,
    to_status: PipelineStatus,
    worker_id: str,
    batch_size: int,
    now: datetime,
) -> Update:
    table = StagingEvent.__table__
    candidates = (
        select(StagingEvent.id)
        .where(
            StagingEvent.pipeline_status == from_status,
            or_(StagingEvent.next_attempt_at.is_(None), StagingEvent.next_attempt_at <= now),
        )
        .order_by(StagingEvent.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    return (
        update(table)
        .where(table.c.id.in_(candidates))
        .values(pipeline_status=to_status, worker_id=worker_id, leased_at=now, updated_at=now)
        .returning(table.c.id)
    )


class PipelineStateMachine:
    """Staging record transitions, bound to a caller-owned session."""

    def __init__(
        self,
        session: Session,
        settings: Optional[PipelineSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session = session
        self._settings = settings or PipelineSettings()
        self._rng = rng or random.Random()

    # --- entry -------------------------------------------------------------------

    def stage_candidates(
        self,
        source_id: uuid.UUID,
        candidates: Iterable[EventCandidate],
        *,
        job_id: Optional[uuid.UUID] = None,
        source_url: Optional[str] = None,
        strategy: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> StageResult:
        """Insert candidates as `discovered` records; duplicates on either key are counted and dropped."""
        result = StageResult()
        self._session.flush()
        for candidate in candidates:
            content_hash = compute_content_hash(
                title=candidate.title, iso_date=candidate.iso_date, raw_date=candidate.date
            )
            fingerprint = compute_event_fingerprint(
                title=candidate.title, iso_date=candidate.iso_date, source_id=source_id, raw_date=candidate.date
            )
            if self._is_duplicate(source_id, content_hash, fingerprint):
                result.deduplicated += 1
                continue

            record = StagingEvent(
                source_id=source_id,
                job_id=job_id,
                pipeline_status=S.DISCOVERED,
                source_url=candidate.detail_url or source_url,
                title=candidate.title,
                event_date=candidate.iso_date or (candidate.date or None),
                raw_content=candidate.raw_content,
                extracted_fields=candidate.to_fields(),
                parsing_method=strategy,
                parsing_confidence=confidence,
                content_hash=content_hash,
                event_fingerprint=fingerprint,
                retry_count=0,
            )
            try:
                with self._session.begin_nested():
                    self._session.add(record)
                    self._session.flush()
            except IntegrityError:
                # Lost a race with a concurrent writer on one of the unique keys.
                result.deduplicated += 1
                continue
            result.inserted += 1
            result.record_ids.append(record.id)

        if result.inserted or result.deduplicated:
            logger.info(
                f"Staged {result.inserted} events for source {source_id} "
                f"({result.deduplicated} duplicates dropped)"
            )
        return result

    def queue_discovered(self, limit: int = 500) -> int:
        """Hand `discovered` records to the enrichment queue."""
        self._session.flush()
        table = StagingEvent.__table__
        now = utcnow()
        ids = (
            select(StagingEvent.id)
            .where(StagingEvent.pipeline_status == S.DISCOVERED)
            .order_by(StagingEvent.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(table)
            .where(table.c.id.in_(ids))
            .values(pipeline_status=S.AWAITING_ENRICHMENT, updated_at=now)
            .returning(table.c.id)
        )
        return len(self._session.execute(stmt).scalars().all())

    # --- enrichment ------------------------------------------------------------------

    def claim_for_enrichment(self, worker_id: str, batch_size: int) -> list[ClaimedRecord]:
        return self._lease(S.AWAITING_ENRICHMENT, S.ENRICHING, worker_id, batch_size)

    def complete_enrichment(
        self,
        record_id: uuid.UUID,
        structured_data: dict[str, Any],
        confidence: Optional[float] = None,
    ) -> PipelineStatus:
        """Persist structured data (`enriched`), then validate it into `ready_to_index` or `failed`."""
        record = self._lock(record_id)
        if not structured_data:
            raise InvalidTransitionError(f"Record {record_id}: enrichment returned no structured data")
        self._transition(record, S.ENRICHED)
        record.structured_data = structured_data
        record.enrichment_confidence = confidence
        record.worker_id = None
        record.leased_at = None
        record.next_attempt_at = None
        self._session.flush()

        problem = self._validation_problem(record)
        if problem:
            self._transition(record, S.FAILED)
            record.last_error = f"validation failed: {problem}"
            logger.warning(f"Record {record_id} failed validation: {problem}")
            return record.pipeline_status

        self._transition(record, S.READY_TO_INDEX)
        record.last_error = None
        return record.pipeline_status

    def fail_enrichment(self, record_id: uuid.UUID, error: str) -> PipelineStatus:
        """Recoverable enrichment failure: back to the queue with a jittered delay, or `failed` at the ceiling."""
        record = self._lock(record_id)
        if record.pipeline_status != S.ENRICHING:
            raise InvalidTransitionError(
                f"Record {record_id} is {record.pipeline_status.value}; expected {S.ENRICHING.value}"
            )
        record.last_error = (error or "")[:2000]
        record.worker_id = None
        record.leased_at = None

        if record.retry_count < self._settings.enrichment_retry_limit:
            delay = self.retry_delay(record.retry_count)
            record.retry_count += 1
            record.next_attempt_at = utcnow() + delay
            self._transition(record, S.AWAITING_ENRICHMENT)
            logger.info(
                f"Record {record_id} enrichment retry {record.retry_count}/"
                f"{self._settings.enrichment_retry_limit} in {int(delay.total_seconds())}s"
            )
        else:
            self._transition(record, S.FAILED)
            logger.warning(f"Record {record_id} failed after {record.retry_count} enrichment retries: {error}")
        return record.pipeline_status

    def retry_delay(self, retry_count: int) -> timedelta:
        base = self._settings.enrichment_retry_base_seconds * (2 ** retry_count)
        return timedelta(seconds=base * (1.0 + self._rng.uniform(-RETRY_JITTER, RETRY_JITTER)))

    # --- indexing ----------------------------------------------------------------------

    def claim_for_indexing(self, worker_id: str, batch_size: int) -> list[ClaimedRecord]:
        return self._lease(S.READY_TO_INDEX, S.INDEXING, worker_id, batch_size)

    def index_record(self, record_id: uuid.UUID, store: PublicationStore) -> PipelineStatus:
        record = self._lock(record_id)
        if record.pipeline_status != S.INDEXING:
            raise InvalidTransitionError(
                f"Record {record_id} is {record.pipeline_status.value}; expected {S.INDEXING.value}"
            )
        record.worker_id = None
        record.leased_at = None
        try:
            event = build_publishable_event(record)
        except ValueError as exc:
            return self._close_failed(record, str(exc))

        try:
            if store.exists(
                content_hash=event.content_hash,
                source_id=event.source_id,
                event_fingerprint=event.event_fingerprint,
            ):
                logger.info(f"Record {record_id} already published; closing as duplicate")
                return self._close_processed(record, None)
            published_id = store.publish(event)
        except DuplicateEventError:
            logger.info(f"Record {record_id} lost a publish race; closing as duplicate")
            return self._close_processed(record, None)
        except Exception as exc:  # noqa: BLE001
            return self._close_failed(record, f"{type(exc).__name__}: {exc}")
        return self._close_processed(record, published_id)

    # --- recovery & reporting --------------------------------------------------------------

    def reap_stalled_records(self, timeout: Optional[timedelta] = None) -> dict[str, int]:
        """Expired enrichment leases go back to the queue (no retry consumed); expired indexing leases fail."""
        timeout = timeout or timedelta(minutes=self._settings.stall_timeout_minutes)
        now = utcnow()
        cutoff = now - timeout
        self._session.flush()
        table = StagingEvent.__table__

        requeued = self._session.execute(
            update(table)
            .where(table.c.pipeline_status == S.ENRICHING, table.c.leased_at < cutoff)
            .values(pipeline_status=S.AWAITING_ENRICHMENT, worker_id=None, leased_at=None, updated_at=now)
            .returning(table.c.id)
        ).scalars().all()
        failed = self._session.execute(
            update(table)
            .where(table.c.pipeline_status == S.INDEXING, table.c.leased_at < cutoff)
            .values(
                pipeline_status=S.FAILED,
                worker_id=None,
                leased_at=None,
                last_error=INDEXING_LEASE_EXPIRED,
                updated_at=now,
            )
            .returning(table.c.id)
        ).scalars().all()

        if requeued or failed:
            logger.warning(f"Reaped staging leases: {len(requeued)} enrichment requeued, {len(failed)} indexing failed")
        return {"enrichment_requeued": len(requeued), "indexing_failed": len(failed)}

    def status_summary(self) -> dict[str, int]:
        self._session.flush()
        counts = {status.value: 0 for status in PipelineStatus}
        rows = self._session.execute(
            select(StagingEvent.pipeline_status, func.count()).group_by(StagingEvent.pipeline_status)
        ).all()
        for status, count in rows:
            counts[PipelineStatus(status).value] = int(count)
        return counts

    # --- internals ----------------------------------------------------------------------------

    def _is_duplicate(self, source_id: uuid.UUID, content_hash: str, fingerprint: str) -> bool:
        stmt = (
            select(StagingEvent.id)
            .where(
                or_(
                    (StagingEvent.content_hash == content_hash) & (StagingEvent.pipeline_status != S.FAILED),
                    (StagingEvent.source_id == source_id) & (StagingEvent.event_fingerprint == fingerprint),
                )
            )
            .limit(1)
        )
        return self._session.execute(stmt).first() is not None

    def _lease(
        self,
        from_status: PipelineStatus,
        to_status: PipelineStatus,
        worker_id: str,
        batch_size: int,
    ) -> list[ClaimedRecord]:
        if batch_size <= 0:
            return []
        self._session.flush()
        now = utcnow()
        ids = list(
            self._session.execute(build_lease_statement(from_status, to_status, worker_id, batch_size, now))
            .scalars()
            .all()
        )
        if not ids:
            return []
        records = self._session.execute(
            select(StagingEvent)
            .where(StagingEvent.id.in_(ids))
            .order_by(StagingEvent.created_at.asc())
            .execution_options(populate_existing=True)
        ).scalars().all()
        logger.info(f"Worker {worker_id} leased {len(records)} records for {to_status.value}")
        return [ClaimedRecord.from_record(r) for r in records]

    def _lock(self, record_id: uuid.UUID) -> StagingEvent:
        self._session.flush()
        record = self._session.execute(
            select(StagingEvent)
            .where(StagingEvent.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            raise LookupError(f"Staging record {record_id} not found")
        return record

    def _transition(self, record: StagingEvent, target: PipelineStatus) -> None:
        current = record.pipeline_status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Record {record.id}: {current.value} -> {target.value} is not allowed")
        record.pipeline_status = target

    def _validation_problem(self, record: StagingEvent) -> Optional[str]:
        data = record.structured_data or {}
        title = str(data.get("title") or record.title or "").strip()
        if not title:
            return "missing title"
        raw_date = data.get("event_date") or data.get("date") or record.event_date
        if not parse_to_iso_date(str(raw_date) if raw_date else None):
            return "missing or unparseable event date"
        return None

    def _close_processed(self, record: StagingEvent, published_id: Optional[uuid.UUID]) -> PipelineStatus:
        self._transition(record, S.PROCESSED)
        record.published_event_id = published_id
        record.processed_at = utcnow()
        record.last_error = None
        return record.pipeline_status

    def _close_failed(self, record: StagingEvent, error: str) -> PipelineStatus:
        self._transition(record, S.FAILED)
        record.last_error = error[:2000]
        logger.warning(f"Record {record.id} failed indexing: {error}")
        return record.pipeline_status


def build_publishable_event(record: StagingEvent) -> PublishableEvent:
    """Normalized event from structured data, falling back to the extracted fields."""
    data = dict(record.structured_data or {})
    fields = dict(record.extracted_fields or {})

    def pick(*keys: str) -> Optional[str]:
        for source in (data, fields):
            for key in keys:
                value = source.get(key)
                if value not in (None, ""):
                    return str(value).strip()
        return None

    title = pick("title") or record.title
    raw_date = pick("event_date", "iso_date", "date") or record.event_date
    event_date = parse_to_iso_date(raw_date)
    if not title or not event_date:
        raise ValueError("cannot publish without title and event date")

    known = {
        "title", "event_date", "iso_date", "date", "start_time", "description", "venue_name", "location",
        "category", "image_url", "ticket_url", "detail_url",
    }
    return PublishableEvent(
        source_id=record.source_id,
        content_hash=compute_content_hash(title=title, iso_date=event_date),
        event_fingerprint=record.event_fingerprint,
        title=title,
        event_date=event_date,
        start_time=pick("start_time") or parse_time(raw_date if raw_date and ("T" in raw_date or ":" in raw_date) else None),
        description=pick("description"),
        venue_name=pick("venue_name"),
        location=pick("location"),
        category=pick("category"),
        image_url=pick("image_url"),
        ticket_url=pick("ticket_url"),
        source_url=pick("detail_url") or record.source_url,
        attributes={k: v for k, v in data.items() if k not in known},
    )
