from __future__ import annotations

"""Job scheduler: enqueue, atomic claim, completion, retry and stall recovery.

Claim protocol:
- `claim_batch` is the only path from `pending` to `processing`. It is one
  statement: UPDATE ... WHERE id IN (SELECT ... ORDER BY priority desc,
  created_at asc LIMIT n FOR UPDATE SKIP LOCKED) RETURNING id. Concurrent
  claimers skip each other's locked rows, so returned batches are disjoint.
- Only jobs whose source is enabled, not quarantined and due are claimable;
  the source cadence (`next_scrape_at`) is what throttles retries.

Crash recovery:
- Workers are never trusted to report their own death. `reap_stalled` returns
  `processing` jobs older than the stall timeout to `pending` with attempts
  unchanged.
"""

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import Update, select, update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import PipelineSettings
from app.models.scrape_job import ACTIVE_JOB_STATUSES, JobStatus, ScrapeJob
from app.models.source import Source
from ingestion.core.errors import InvalidTransitionError
from ingestion.core.source_registry import ScrapeOutcome, SourceRegistry, due_source_filter, priority_for_tier

logger = logging.getLogger("lcl.ingestion.scheduler")

RETRY_JITTER = 0.2


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    """Detached view of a claimed job, safe to use after the claim transaction commits."""

    id: uuid.UUID
    source_id: uuid.UUID
    priority: int
    attempts: int
    max_attempts: int
    payload: Optional[dict[str, Any]]

    @classmethod
    def from_job(cls, job: ScrapeJob) -> "ClaimedJob":
        return cls(
            id=job.id,
            source_id=job.source_id,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            payload=dict(job.payload) if job.payload else None,
        )


@dataclass(frozen=True, slots=True)
class JobResult:
    events_scraped: int = 0
    events_inserted: int = 0
    events_deduplicated: int = 0
    strategy: Optional[str] = None
    confidence: Optional[float] = None


@dataclass(frozen=True, slots=True)
class JobFailure:
    error_type: str
    message: str
    status_code: Optional[int] = None
    blocked: bool = False


def build_claim_statement(worker_id: str, batch_size: int, now: datetime) -> Update:
    """The single-statement claim. Exposed so its compiled SQL can be inspected per dialect."""
    due_sources = select(Source.id).where(*due_source_filter(now))
    candidates = (
        select(ScrapeJob.id)
        .where(
            ScrapeJob.status == JobStatus.PENDING,
            ScrapeJob.attempts < ScrapeJob.max_attempts,
            ScrapeJob.source_id.in_(due_sources),
        )
        .order_by(ScrapeJob.priority.desc(), ScrapeJob.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    return (
        update(ScrapeJob.__table__)
        .where(ScrapeJob.__table__.c.id.in_(candidates))
        .values(status=JobStatus.PROCESSING, started_at=now, worker_id=worker_id)
        .returning(ScrapeJob.__table__.c.id)
    )


class JobScheduler:
    """Scrape job lifecycle, bound to a caller-owned session."""

    def __init__(
        self,
        session: Session,
        settings: Optional[PipelineSettings] = None,
        *,
        registry: Optional[SourceRegistry] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session = session
        self._settings = settings or PipelineSettings()
        self._registry = registry or SourceRegistry(session, self._settings)
        self._rng = rng or random.Random()

    @property
    def registry(self) -> SourceRegistry:
        return self._registry

    # --- enqueue -----------------------------------------------------------------

    def enqueue(
        self,
        source_id: uuid.UUID,
        priority: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> uuid.UUID:
        source = self._registry.get(source_id)
        job = ScrapeJob(
            source_id=source.id,
            status=JobStatus.PENDING,
            priority=priority if priority is not None else priority_for_tier(source.tier),
            attempts=0,
            max_attempts=self._settings.job_max_attempts,
            payload=payload,
        )
        self._session.add(job)
        self._session.flush()
        return job.id

    def enqueue_due_sources(self, limit: int, tier: Optional[int] = None) -> list[uuid.UUID]:
        """One pending job per due source that has no active job yet."""
        self._session.flush()
        active = set(
            self._session.execute(
                select(ScrapeJob.source_id).where(ScrapeJob.status.in_(ACTIVE_JOB_STATUSES)).distinct()
            ).scalars().all()
        )
        job_ids: list[uuid.UUID] = []
        for source in self._registry.get_due_sources(limit, tier=tier):
            if source.id in active:
                continue
            job_ids.append(self.enqueue(source.id, payload={"trigger": "schedule", "tier": source.tier}))
        if job_ids:
            logger.info(f"Enqueued {len(job_ids)} scrape jobs")
        return job_ids

    # --- claim ---------------------------------------------------------------------

    def claim_batch(self, worker_id: str, batch_size: int) -> list[ScrapeJob]:
        if batch_size <= 0:
            return []
        self._session.flush()
        now = utcnow()
        claimed_ids = list(self._session.execute(build_claim_statement(worker_id, batch_size, now)).scalars().all())
        if not claimed_ids:
            return []
        stmt = (
            select(ScrapeJob)
            .where(ScrapeJob.id.in_(claimed_ids))
            .order_by(ScrapeJob.priority.desc(), ScrapeJob.created_at.asc())
            .execution_options(populate_existing=True)
        )
        jobs = list(self._session.execute(stmt).scalars().all())
        logger.info(f"Worker {worker_id} claimed {len(jobs)} jobs")
        return jobs

    # --- outcomes ----------------------------------------------------------------------

    def complete(self, job_id: uuid.UUID, result: JobResult) -> bool:
        """Mark a job completed. Returns False (no-op) if it is already terminal."""
        job = self._lock(job_id)
        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.status.value}; completion ignored")
            return False
        if job.status == JobStatus.PENDING:
            logger.warning(f"Job {job_id} completed after being reaped; accepting late completion")

        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        job.events_scraped = result.events_scraped
        job.events_inserted = result.events_inserted
        job.events_deduplicated = result.events_deduplicated
        job.strategy = result.strategy
        job.confidence = result.confidence
        job.error_type = None
        job.error_message = None

        self._registry.record_outcome(
            job.source_id,
            ScrapeOutcome(success=True, events_found=result.events_scraped, strategy=result.strategy),
        )
        self._registry.promote_strategy_if_stable(job.source_id)
        return True

    def fail(self, job_id: uuid.UUID, failure: JobFailure) -> JobStatus:
        """Consume one attempt. Below the ceiling the job returns to pending and the source is deferred."""
        job = self._lock(job_id)
        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.status.value}; failure ignored")
            return job.status

        now = utcnow()
        job.attempts = min(job.attempts + 1, job.max_attempts)
        job.error_type = failure.error_type
        job.error_message = (failure.message or "")[:2000]
        job.worker_id = None

        if job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING
            job.started_at = None
            delay = self.retry_delay(job.attempts)
            self._registry.schedule_next_scrape(job.source_id, now + delay)
            logger.warning(
                f"Job {job_id} failed [{failure.error_type}] attempt {job.attempts}/{job.max_attempts}; "
                f"retry in {int(delay.total_seconds())}s"
            )
            return job.status

        job.status = JobStatus.FAILED
        job.completed_at = now
        logger.error(f"Job {job_id} dead-lettered after {job.attempts} attempts [{failure.error_type}]")
        self._registry.record_outcome(
            job.source_id,
            ScrapeOutcome(
                success=False,
                error_type=failure.error_type,
                status_code=failure.status_code,
                message=failure.message,
            ),
        )
        return job.status

    def retry_delay(self, attempts: int) -> timedelta:
        base = self._settings.retry_base_minutes * (2 ** max(attempts - 1, 0))
        jittered = base * (1.0 + self._rng.uniform(-RETRY_JITTER, RETRY_JITTER))
        return timedelta(minutes=min(jittered, self._settings.retry_max_minutes))

    # --- recovery --------------------------------------------------------------------------

    def reap_stalled(self, timeout: Optional[timedelta] = None) -> int:
        """Return stalled `processing` jobs to `pending`; attempts are left unchanged."""
        timeout = timeout or timedelta(minutes=self._settings.stall_timeout_minutes)
        cutoff = utcnow() - timeout
        self._session.flush()
        table = ScrapeJob.__table__
        stmt = (
            update(table)
            .where(table.c.status == JobStatus.PROCESSING, table.c.started_at < cutoff)
            .values(status=JobStatus.PENDING, started_at=None, worker_id=None)
            .returning(table.c.id)
        )
        reaped = list(self._session.execute(stmt).scalars().all())
        if reaped:
            logger.warning(f"Reaped {len(reaped)} stalled jobs (started before {cutoff.isoformat()})")
        return len(reaped)

    def requeue(self, job_id: uuid.UUID) -> ScrapeJob:
        """Operator action: put a failed or stuck job back in the queue with its attempts reset."""
        job = self._lock(job_id)
        if job.status == JobStatus.COMPLETED:
            raise InvalidTransitionError(f"Job {job_id} is completed; nothing to requeue")
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.started_at = None
        job.completed_at = None
        job.worker_id = None
        job.error_type = None
        job.error_message = None
        self._registry.schedule_next_scrape(job.source_id, None)
        logger.info(f"Job {job_id} requeued by operator")
        return job

    def _lock(self, job_id: uuid.UUID) -> ScrapeJob:
        self._session.flush()
        stmt = (
            select(ScrapeJob)
            .where(ScrapeJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        job = self._session.execute(stmt).scalar_one_or_none()
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        return job
