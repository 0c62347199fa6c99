from __future__ import annotations

"""Scrape runner: one worker's claim -> fetch -> extract -> stage -> complete loop.

Transactions are short and never span network I/O:
1. claim a batch (one transaction), snapshot jobs and source targets;
2. fetch and extract concurrently, bounded by a semaphore;
3. per job, write the outcome (staging rows + completion, or failure entry +
   job failure) in its own transaction.

A single job's failure never escapes `process`; it becomes a FailureLogEntry
plus a job transition.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session, sessionmaker

from app.core.settings import PipelineSettings
from app.models.failure_log import FailureType
from ingestion.core.errors import FetchError, SourceQuarantinedError
from ingestion.core.failures import (
    classify_extraction_failure,
    classify_fetch_error,
    record_failure,
    strategy_trace_label,
)
from ingestion.core.fetch_gate import FetchGate
from ingestion.core.pipeline import PipelineStateMachine
from ingestion.core.scheduler import ClaimedJob, JobFailure, JobResult, JobScheduler
from ingestion.core.source_registry import SourceRegistry, SourceTarget
from ingestion.extraction import ExtractionContext, ExtractionResult, Strategy, extract

logger = logging.getLogger("lcl.ingestion.scrape")


@dataclass(slots=True)
class JobReport:
    job_id: str
    source: str
    status: str
    events_found: int = 0
    events_inserted: int = 0
    events_deduplicated: int = 0
    strategy: Optional[str] = None
    error_type: Optional[str] = None


@dataclass(slots=True)
class ScrapeBatchSummary:
    worker_id: str
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    events_found: int = 0
    events_inserted: int = 0
    events_deduplicated: int = 0
    reports: list[JobReport] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["reports"] = [asdict(r) for r in self.reports]
        return data


class ScrapeRunner:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gate: FetchGate,
        settings: Optional[PipelineSettings] = None,
        *,
        worker_id: str = "scrape-worker",
    ) -> None:
        self._session_factory = session_factory
        self._gate = gate
        self._settings = settings or PipelineSettings()
        self._worker_id = worker_id

    async def run_batch(self, batch_size: int) -> ScrapeBatchSummary:
        summary = ScrapeBatchSummary(worker_id=self._worker_id)
        with self._session_factory.begin() as session:
            scheduler = JobScheduler(session, self._settings)
            jobs = scheduler.claim_batch(self._worker_id, batch_size)
            claims = [
                (ClaimedJob.from_job(job), scheduler.registry.get_target(job.source_id))
                for job in jobs
            ]
        summary.claimed = len(claims)
        if not claims:
            return summary

        semaphore = asyncio.Semaphore(max(1, self._settings.scrape_concurrency))

        async def _bounded(job: ClaimedJob, target: SourceTarget) -> JobReport:
            async with semaphore:
                return await self.process(job, target)

        reports = await asyncio.gather(*(_bounded(job, target) for job, target in claims))
        for report in reports:
            summary.reports.append(report)
            if report.status == "completed":
                summary.completed += 1
            else:
                summary.failed += 1
            summary.events_found += report.events_found
            summary.events_inserted += report.events_inserted
            summary.events_deduplicated += report.events_deduplicated
        return summary

    async def process(self, job: ClaimedJob, target: SourceTarget) -> JobReport:
        try:
            return await self._process(job, target)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Job {job.id} for {target.name} crashed: {type(exc).__name__}")
            return self._fail(
                job,
                target,
                FailureType.PARSE_ERROR,
                JobFailure(error_type="internal_error", message=f"{type(exc).__name__}: {exc}"),
            )

    async def _process(self, job: ClaimedJob, target: SourceTarget) -> JobReport:
        try:
            fetched = await self._gate.fetch(target)
        except SourceQuarantinedError as exc:
            return self._fail(job, target, None, JobFailure(error_type=FailureType.FETCH_ERROR.value, message=str(exc)))
        except FetchError as exc:
            failure_type = classify_fetch_error(exc)
            return self._fail(
                job,
                target,
                failure_type,
                JobFailure(
                    error_type=failure_type.value,
                    message=str(exc),
                    status_code=exc.status_code,
                    blocked=exc.blocked,
                ),
            )

        context = ExtractionContext(
            url=fetched.url,
            detected_cms=target.detected_cms,
            preferred_method=target.preferred_method,
            dom_selectors=target.dom_selectors,
        )
        result = extract(fetched.content, context)
        if not result.success and result.metadata.get("discovered_feeds"):
            result = await self._follow_feeds(target, result)

        if not result.success:
            failure_type = classify_extraction_failure(result, operator_selectors=bool(target.dom_selectors))
            return self._fail(
                job,
                target,
                failure_type,
                JobFailure(error_type=failure_type.value, message=_extraction_message(failure_type, result)),
                result=result,
            )
        return self._complete(job, target, result)

    async def _follow_feeds(self, target: SourceTarget, page_result: ExtractionResult) -> ExtractionResult:
        feeds = list(page_result.metadata.get("discovered_feeds") or [])[: self._settings.max_feed_follow]
        followed: list[dict[str, Any]] = []
        for feed_url in feeds:
            try:
                fetched = await self._gate.fetch(target, feed_url)
            except FetchError as exc:
                followed.append({"url": feed_url, "error": str(exc)})
                continue
            feed_result = extract(
                fetched.content,
                ExtractionContext(url=fetched.url, preferred_method=Strategy.FEED.value),
            )
            followed.append({"url": feed_url, "events": len(feed_result.events)})
            if feed_result.success:
                logger.info(f"Source {target.name}: {len(feed_result.events)} events via discovered feed {feed_url}")
                metadata = {
                    **feed_result.metadata,
                    "detected_cms": page_result.metadata.get("detected_cms"),
                    "followed_feeds": followed,
                }
                return ExtractionResult(
                    success=True,
                    events=feed_result.events,
                    strategy=feed_result.strategy,
                    confidence=feed_result.confidence,
                    metadata=metadata,
                )
        metadata = {**page_result.metadata, "followed_feeds": followed}
        return ExtractionResult(success=False, events=(), strategy=None, confidence=0.0, metadata=metadata)

    def _complete(self, job: ClaimedJob, target: SourceTarget, result: ExtractionResult) -> JobReport:
        strategy = result.strategy.value if result.strategy else None
        with self._session_factory.begin() as session:
            registry = SourceRegistry(session, self._settings)
            registry.set_detected_cms(target.id, result.metadata.get("detected_cms"))
            staged = PipelineStateMachine(session, self._settings).stage_candidates(
                target.id,
                result.events,
                job_id=job.id,
                source_url=target.url,
                strategy=strategy,
                confidence=result.confidence,
            )
            JobScheduler(session, self._settings, registry=registry).complete(
                job.id,
                JobResult(
                    events_scraped=len(result.events),
                    events_inserted=staged.inserted,
                    events_deduplicated=staged.deduplicated,
                    strategy=strategy,
                    confidence=result.confidence,
                ),
            )
        logger.info(
            f"Source {target.name}: {len(result.events)} events via {strategy} "
            f"(confidence={result.confidence}, new={staged.inserted}, dup={staged.deduplicated})"
        )
        return JobReport(
            job_id=str(job.id),
            source=target.name,
            status="completed",
            events_found=len(result.events),
            events_inserted=staged.inserted,
            events_deduplicated=staged.deduplicated,
            strategy=strategy,
        )

    def _fail(
        self,
        job: ClaimedJob,
        target: SourceTarget,
        failure_type: Optional[FailureType],
        failure: JobFailure,
        *,
        result: Optional[ExtractionResult] = None,
    ) -> JobReport:
        with self._session_factory.begin() as session:
            registry = SourceRegistry(session, self._settings)
            if result is not None:
                registry.set_detected_cms(target.id, result.metadata.get("detected_cms"))
            if failure_type is not None:
                record_failure(
                    session,
                    source_id=target.id,
                    job_id=job.id,
                    error_type=failure_type,
                    message=failure.message,
                    status_code=failure.status_code,
                    blocked=failure.blocked,
                    events_found=0,
                    strategy_trace=strategy_trace_label(result),
                )
            status = JobScheduler(session, self._settings, registry=registry).fail(job.id, failure)
        return JobReport(
            job_id=str(job.id),
            source=target.name,
            status=status.value,
            error_type=failure.error_type,
        )


def _extraction_message(failure_type: FailureType, result: ExtractionResult) -> str:
    trace = result.metadata.get("trace") or []
    reasons = ", ".join(f"{step.get('strategy')}={step.get('reason') or step.get('error') or 'no events'}" for step in trace)
    return f"{failure_type.value}: {reasons}" if reasons else failure_type.value
