from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Callable

import httpx
from sqlalchemy import select

from app.core.settings import PipelineSettings
from app.models.failure_log import FailureLogEntry, FailureType
from app.models.scrape_job import JobStatus, ScrapeJob
from app.models.source import Source
from app.models.staging_event import PipelineStatus, StagingEvent
from ingestion.core import scrape_runner as scrape_runner_module
from ingestion.core.fetch_gate import FetchGate
from ingestion.core.scheduler import ClaimedJob, JobScheduler
from ingestion.core.scrape_runner import ScrapeRunner
from ingestion.core.self_healing import SelfHealingMonitor
from ingestion.core.source_registry import SourceTarget
from ingestion.jobs.run_scrape_worker import run_scrape_batch


LISTING = """<html><body>
<article class="event"><h3><a href="/a">Zomerconcert Stadspark</a></h3><time datetime="2026-07-04">4 juli</time></article>
<article class="event"><h3><a href="/b">Boekenmarkt</a></h3><time datetime="2026-07-05">5 juli</time></article>
</body></html>"""

CALENDAR = (
    "BEGIN:VCALENDAR\nBEGIN:VEVENT\nSUMMARY:Sinterklaasintocht\nDTSTART:20261114T130000\nEND:VEVENT\nEND:VCALENDAR\n"
)


async def _no_sleep(seconds: float) -> None:
    return None


def _gate(handler: Callable[[httpx.Request], httpx.Response], settings: PipelineSettings) -> FetchGate:
    return FetchGate(
        settings,
        client_factory=lambda proxy: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=_no_sleep,
    )


def _run(session_factory, settings, handler, batch_size: int = 5):
    async def _go():
        async with _gate(handler, settings) as gate:
            return await ScrapeRunner(session_factory, gate, settings, worker_id="scrape-test").run_batch(batch_size)

    return asyncio.run(_go())


def _seed(session_factory, make_source, *, attempts: int = 0, **source_fields):
    with session_factory.begin() as session:
        source = make_source(session, **source_fields)
        job = ScrapeJob(source_id=source.id, status=JobStatus.PENDING, priority=2, attempts=attempts, max_attempts=3)
        session.add(job)
        session.flush()
        return source.id, job.id


def test_successful_job_stages_events_and_completes(session_factory, make_source, settings):
    source_id, job_id = _seed(session_factory, make_source)

    summary = _run(session_factory, settings, lambda request: httpx.Response(200, text=LISTING))

    assert (summary.claimed, summary.completed, summary.failed) == (1, 1, 0)
    assert summary.events_inserted == 2
    assert summary.reports[0].strategy == "dom"
    with session_factory() as session:
        job = session.get(ScrapeJob, job_id)
        assert job.status == JobStatus.COMPLETED
        assert (job.events_scraped, job.events_inserted, job.strategy) == (2, 2, "dom")
        records = session.execute(select(StagingEvent).where(StagingEvent.source_id == source_id)).scalars().all()
        assert {r.title for r in records} == {"Zomerconcert Stadspark", "Boekenmarkt"}
        assert all(r.pipeline_status == PipelineStatus.DISCOVERED for r in records)
        assert all(r.job_id == job_id for r in records)
        source = session.get(Source, source_id)
        assert source.health_score == 75
        assert source.next_scrape_at is not None


def test_rescrape_deduplicates_against_staged_records(session_factory, make_source, settings):
    source_id, _ = _seed(session_factory, make_source)
    _run(session_factory, settings, lambda request: httpx.Response(200, text=LISTING))
    with session_factory.begin() as session:
        source = session.get(Source, source_id)
        source.next_scrape_at = None
        session.add(ScrapeJob(source_id=source_id, status=JobStatus.PENDING, priority=2, max_attempts=3))

    summary = _run(session_factory, settings, lambda request: httpx.Response(200, text=LISTING))

    assert summary.events_inserted == 0
    assert summary.events_deduplicated == 2


def test_blocked_fetch_logs_failure_and_retries_later(session_factory, make_source, settings):
    source_id, job_id = _seed(session_factory, make_source)

    summary = _run(session_factory, settings, lambda request: httpx.Response(403, text="Forbidden"))

    assert summary.failed == 1
    assert summary.reports[0].status == "pending"
    with session_factory() as session:
        job = session.get(ScrapeJob, job_id)
        assert (job.status, job.attempts, job.error_type) == (JobStatus.PENDING, 1, "fetch_error")
        entry = session.execute(select(FailureLogEntry).where(FailureLogEntry.job_id == job_id)).scalar_one()
        assert entry.error_type == FailureType.FETCH_ERROR
        assert (entry.status_code, entry.blocked) == (403, True)
        source = session.get(Source, source_id)
        assert source.health_score == 70
        assert source.next_scrape_at is not None
        # the gate itself never escalates
        assert source.rate_limit_ms == 200


def test_discovered_feed_is_followed(session_factory, make_source, settings):
    _, job_id = _seed(session_factory, make_source)
    page = '<html><head><link rel="alternate" type="text/calendar" href="/agenda.ics"></head><body></body></html>'

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith(".ics"):
            return httpx.Response(200, text=CALENDAR)
        return httpx.Response(200, text=page)

    summary = _run(session_factory, settings, handler)

    assert summary.completed == 1
    assert summary.reports[0].strategy == "feed"
    with session_factory() as session:
        record = session.execute(select(StagingEvent).where(StagingEvent.job_id == job_id)).scalar_one()
        assert record.title == "Sinterklaasintocht"
        assert record.extracted_fields["start_time"] == "13:00"


def test_operator_selectors_that_miss_are_selector_failures(session_factory, make_source, settings):
    source_id, job_id = _seed(session_factory, make_source, dom_selectors=[".agenda-tegel"])

    summary = _run(session_factory, settings, lambda request: httpx.Response(200, text="<html><body><p>Leeg</p></body></html>"))

    assert summary.reports[0].error_type == "selector_failed"
    with session_factory() as session:
        entry = session.execute(select(FailureLogEntry).where(FailureLogEntry.source_id == source_id)).scalar_one()
        assert entry.error_type == FailureType.SELECTOR_FAILED
        assert entry.events_found == 0
        assert entry.strategy_trace == "hydration>json_ld>feed>dom"
        assert session.get(ScrapeJob, job_id).error_message.startswith("selector_failed: ")


def test_unexpected_errors_fail_the_job_without_crashing(session_factory, make_source, settings, monkeypatch):
    _, job_id = _seed(session_factory, make_source)

    def _explode(content, context):
        raise RuntimeError("parser blew up")

    monkeypatch.setattr(scrape_runner_module, "extract", _explode)

    summary = _run(session_factory, settings, lambda request: httpx.Response(200, text=LISTING))

    assert summary.reports[0].error_type == "internal_error"
    with session_factory() as session:
        job = session.get(ScrapeJob, job_id)
        assert (job.status, job.attempts) == (JobStatus.PENDING, 1)
        assert job.error_message == "RuntimeError: parser blew up"
        entry = session.execute(select(FailureLogEntry).where(FailureLogEntry.job_id == job_id)).scalar_one()
        assert entry.error_type == FailureType.PARSE_ERROR
        assert entry.message == "RuntimeError: parser blew up"
        assert (entry.status_code, entry.blocked, entry.events_found) == (None, False, 0)


def test_quarantined_target_is_refused_without_failure_entry(session_factory, make_source, settings):
    source_id, job_id = _seed(session_factory, make_source)
    with session_factory() as session:
        claimed = ClaimedJob.from_job(session.get(ScrapeJob, job_id))
        target = SourceTarget.from_source(session.get(Source, source_id))
    quarantined = replace(target, quarantined=True)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, text=LISTING)

    async def _go():
        async with _gate(handler, settings) as gate:
            return await ScrapeRunner(session_factory, gate, settings).process(claimed, quarantined)

    report = asyncio.run(_go())

    assert report.status == "pending"
    assert calls == []
    with session_factory() as session:
        assert session.execute(select(FailureLogEntry)).scalars().all() == []


def test_repeated_blocks_dead_letter_quarantine_and_escalate(session_factory, make_source, settings):
    """Third failed attempt of a source already four failures deep."""
    source_id, job_id = _seed(session_factory, make_source, attempts=2, consecutive_failures=4)

    summary = _run(session_factory, settings, lambda request: httpx.Response(403, text="Forbidden"))

    assert summary.reports[0].status == "failed"
    with session_factory() as session:
        job = session.get(ScrapeJob, job_id)
        assert (job.status, job.attempts) == (JobStatus.FAILED, 3)
        source = session.get(Source, source_id)
        assert source.health_score == 55
        assert source.consecutive_failures == 5
        assert source.enabled is False
        assert source.quarantined_at is not None
        assert source.rate_limit_ms == 200

    with session_factory.begin() as session:
        report = SelfHealingMonitor(session, settings).run_once()
    assert report.escalated == [{"source_id": str(source_id), "status_code": 403, "rate_limit_ms": 400}]

    with session_factory.begin() as session:
        assert SelfHealingMonitor(session, settings).run_once().escalated == []
        source = session.get(Source, source_id)
        assert source.rate_limit_ms == 400
        # quarantined sources are not claimable
        JobScheduler(session, settings).enqueue(source_id)
        assert JobScheduler(session, settings).claim_batch("scrape-test", 5) == []


def test_run_scrape_batch_enqueues_due_sources(session_factory, make_source, settings):
    with session_factory.begin() as session:
        source_id = make_source(session).id

    async def _go():
        async with _gate(lambda request: httpx.Response(200, text=LISTING), settings) as gate:
            return await run_scrape_batch(session_factory, settings, worker_id="scrape-test", batch_size=5, gate=gate)

    summary = asyncio.run(_go())

    assert summary.completed == 1
    with session_factory() as session:
        job = session.execute(select(ScrapeJob).where(ScrapeJob.source_id == source_id)).scalar_one()
        assert job.payload == {"trigger": "schedule", "tier": 2}
