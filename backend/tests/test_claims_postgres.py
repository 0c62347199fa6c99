"""Concurrent claim tests against a real PostgreSQL (set DATABASE_URL to run)."""

from __future__ import annotations

import threading

import pytest

from app.core.base import Base
from app.core.db import create_db_engine, make_session_factory
from app.core.settings import PipelineSettings
from ingestion.core.pipeline import PipelineStateMachine
from ingestion.core.scheduler import JobScheduler
from ingestion.extraction.types import EventCandidate


@pytest.fixture()
def pg_session_factory(postgres_url):
    engine = create_db_engine(postgres_url)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


def _race(workers: int, claim) -> list[list]:
    barrier = threading.Barrier(workers)
    results: list[list] = [[] for _ in range(workers)]

    def _worker(index: int) -> None:
        barrier.wait()
        results[index] = claim(f"worker-{index}")

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_concurrent_job_claims_are_disjoint(pg_session_factory, make_source):
    settings = PipelineSettings()
    with pg_session_factory.begin() as session:
        for _ in range(12):
            JobScheduler(session, settings).enqueue(make_source(session).id)

    def _claim(worker_id: str) -> list:
        with pg_session_factory.begin() as session:
            return [job.id for job in JobScheduler(session, settings).claim_batch(worker_id, 5)]

    results = _race(4, _claim)

    claimed = [job_id for batch in results for job_id in batch]
    assert len(claimed) == 12
    assert len(set(claimed)) == 12


def test_concurrent_enrichment_leases_are_disjoint(pg_session_factory, make_source):
    settings = PipelineSettings()
    with pg_session_factory.begin() as session:
        source = make_source(session)
        machine = PipelineStateMachine(session, settings)
        machine.stage_candidates(
            source.id, [EventCandidate(title=f"Voorstelling {i}", iso_date="2026-10-01") for i in range(10)]
        )
        machine.queue_discovered()

    def _claim(worker_id: str) -> list:
        with pg_session_factory.begin() as session:
            return [r.id for r in PipelineStateMachine(session, settings).claim_for_enrichment(worker_id, 4)]

    results = _race(3, _claim)

    leased = [record_id for batch in results for record_id in batch]
    assert len(leased) == 10
    assert len(set(leased)) == 10
