from __future__ import annotations

import random
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql

from app.core.clock import as_utc, utcnow
from app.models.scrape_job import JobStatus, ScrapeJob
from ingestion.core.errors import InvalidTransitionError
from ingestion.core.scheduler import JobFailure, JobResult, JobScheduler, build_claim_statement


def _scheduler(session, settings):
    return JobScheduler(session, settings, rng=random.Random(7))


def test_claim_statement_uses_skip_locked_on_postgres():
    sql = str(build_claim_statement("worker-1", 5, utcnow()).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "RETURNING" in sql
    assert "ORDER BY scrape_jobs.priority DESC, scrape_jobs.created_at ASC" in sql


def test_enqueue_uses_tier_priority(db_session, make_source, settings):
    tier1 = make_source(db_session, tier=1)
    tier3 = make_source(db_session, tier=3)
    scheduler = _scheduler(db_session, settings)

    j1 = db_session.get(ScrapeJob, scheduler.enqueue(tier1.id))
    j3 = db_session.get(ScrapeJob, scheduler.enqueue(tier3.id))

    assert (j1.priority, j3.priority) == (3, 1)
    assert j1.status == JobStatus.PENDING
    assert j1.max_attempts == settings.job_max_attempts


def test_enqueue_due_sources_skips_sources_with_active_jobs(db_session, make_source, settings):
    busy = make_source(db_session)
    idle = make_source(db_session)
    make_source(db_session, enabled=False)
    scheduler = _scheduler(db_session, settings)
    scheduler.enqueue(busy.id)

    created = scheduler.enqueue_due_sources(limit=10)

    assert len(created) == 1
    assert db_session.get(ScrapeJob, created[0]).source_id == idle.id


def test_claim_batch_orders_by_priority_then_age(db_session, make_source, settings):
    source_a = make_source(db_session)
    source_b = make_source(db_session)
    source_c = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    low = scheduler.enqueue(source_a.id, priority=1)
    high_old = scheduler.enqueue(source_b.id, priority=5)
    high_new = scheduler.enqueue(source_c.id, priority=5)

    claimed = scheduler.claim_batch("worker-1", 2)

    assert [job.id for job in claimed] == [high_old, high_new]
    assert all(job.status == JobStatus.PROCESSING for job in claimed)
    assert all(job.worker_id == "worker-1" for job in claimed)
    assert db_session.get(ScrapeJob, low).status == JobStatus.PENDING

    # nothing claimed twice
    assert [job.id for job in scheduler.claim_batch("worker-2", 5)] == [low]
    assert scheduler.claim_batch("worker-3", 5) == []


def test_claim_skips_quarantined_and_deferred_sources(db_session, make_source, settings):
    quarantined = make_source(db_session, enabled=False, quarantined_at=utcnow())
    deferred = make_source(db_session, next_scrape_at=utcnow() + timedelta(minutes=10))
    ready = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    for source in (quarantined, deferred, ready):
        scheduler.enqueue(source.id)

    claimed = scheduler.claim_batch("worker-1", 10)

    assert [job.source_id for job in claimed] == [ready.id]


def test_claim_with_empty_batch_size(db_session, settings):
    assert _scheduler(db_session, settings).claim_batch("worker-1", 0) == []


def test_fail_below_ceiling_requeues_and_defers_source(db_session, make_source, settings):
    source = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    job_id = scheduler.enqueue(source.id)
    scheduler.claim_batch("worker-1", 1)

    before = utcnow()
    status = scheduler.fail(job_id, JobFailure(error_type="fetch_error", message="HTTP 503", status_code=503))

    job = db_session.get(ScrapeJob, job_id)
    assert status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.worker_id is None
    assert job.error_message == "HTTP 503"
    # 5 minutes +-20%
    delay = as_utc(source.next_scrape_at) - before
    assert timedelta(minutes=4) <= delay <= timedelta(minutes=6, seconds=1)
    # health is only charged when the job dead-letters
    assert source.health_score == 70
    assert scheduler.claim_batch("worker-1", 1) == []


def test_fail_at_ceiling_dead_letters_and_charges_source(db_session, make_source, settings):
    source = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    job_id = scheduler.enqueue(source.id)
    job = db_session.get(ScrapeJob, job_id)
    job.attempts = job.max_attempts - 1

    status = scheduler.fail(job_id, JobFailure(error_type="parse_error", message="bad markup"))

    assert status == JobStatus.FAILED
    assert job.attempts == job.max_attempts
    assert job.completed_at is not None
    assert source.health_score == 55
    assert source.consecutive_failures == 1
    # terminal: further failures are ignored
    assert scheduler.fail(job_id, JobFailure(error_type="parse_error", message="again")) == JobStatus.FAILED
    assert job.attempts == job.max_attempts


def test_retry_delay_grows_and_is_capped(db_session, settings):
    from app.core.settings import PipelineSettings

    scheduler = JobScheduler(db_session, PipelineSettings(retry_max_minutes=30), rng=random.Random(1))
    first = scheduler.retry_delay(1)
    second = scheduler.retry_delay(2)
    capped = scheduler.retry_delay(10)

    assert timedelta(minutes=4) <= first <= timedelta(minutes=6)
    assert timedelta(minutes=8) <= second <= timedelta(minutes=12)
    assert capped == timedelta(minutes=30)


def test_complete_is_idempotent(db_session, make_source, settings):
    source = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    job_id = scheduler.enqueue(source.id)
    scheduler.claim_batch("worker-1", 1)
    result = JobResult(events_scraped=8, events_inserted=6, events_deduplicated=2, strategy="dom", confidence=0.6)

    assert scheduler.complete(job_id, result) is True
    assert scheduler.complete(job_id, result) is False

    job = db_session.get(ScrapeJob, job_id)
    assert job.status == JobStatus.COMPLETED
    assert (job.events_scraped, job.events_inserted, job.events_deduplicated) == (8, 6, 2)
    assert source.consecutive_successes == 1
    assert source.total_events_scraped == 8


def test_reap_stalled_returns_jobs_without_consuming_attempts(db_session, make_source, settings):
    source = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    stalled_id = scheduler.enqueue(source.id)
    fresh_id = scheduler.enqueue(make_source(db_session).id)
    scheduler.claim_batch("worker-1", 2)
    stalled = db_session.get(ScrapeJob, stalled_id)
    stalled.attempts = 1
    stalled.started_at = utcnow() - timedelta(hours=2)

    assert scheduler.reap_stalled() == 1

    db_session.refresh(stalled)
    assert stalled.status == JobStatus.PENDING
    assert stalled.attempts == 1
    assert stalled.worker_id is None
    assert db_session.get(ScrapeJob, fresh_id).status == JobStatus.PROCESSING


def test_late_completion_after_reap_is_accepted(db_session, make_source, settings):
    source = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    job_id = scheduler.enqueue(source.id)
    scheduler.claim_batch("worker-1", 1)
    db_session.get(ScrapeJob, job_id).started_at = utcnow() - timedelta(hours=3)
    scheduler.reap_stalled()

    assert scheduler.complete(job_id, JobResult(events_scraped=1, strategy="feed")) is True
    assert db_session.get(ScrapeJob, job_id).status == JobStatus.COMPLETED


def test_requeue(db_session, make_source, settings):
    source = make_source(db_session)
    scheduler = _scheduler(db_session, settings)
    failed_id = scheduler.enqueue(source.id)
    failed = db_session.get(ScrapeJob, failed_id)
    failed.status = JobStatus.FAILED
    failed.attempts = failed.max_attempts
    source.next_scrape_at = utcnow() + timedelta(hours=4)

    job = scheduler.requeue(failed_id)

    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert source.next_scrape_at is None

    scheduler.claim_batch("worker-1", 1)
    scheduler.complete(failed_id, JobResult())
    with pytest.raises(InvalidTransitionError):
        scheduler.requeue(failed_id)
    with pytest.raises(LookupError):
        scheduler.requeue(uuid.uuid4())
