from __future__ import annotations

"""Enrichment worker: queue discovered records, lease a batch, call the enrichment service.

Each record is settled in its own transaction, so one bad response never
rolls back the rest of the batch.

Run:
  python ingestion/jobs/run_enrichment_worker.py --once
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.core.db import get_session_factory  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
from app.core.settings import PipelineSettings, get_settings  # noqa: E402
from app.models.staging_event import PipelineStatus  # noqa: E402
from ingestion.core.enrichment_client import (  # noqa: E402
    EnrichmentClient,
    EnrichmentRequest,
    HttpEnrichmentClient,
)
from ingestion.core.errors import EnrichmentError, InvalidTransitionError  # noqa: E402
from ingestion.core.pipeline import ClaimedRecord, PipelineStateMachine  # noqa: E402
from ingestion.jobs.common import (  # noqa: E402
    add_loop_arguments,
    configure_logging,
    default_worker_id,
    log_event,
    run_loop,
)

logger = logging.getLogger("lcl.jobs.enrichment")


@dataclass(slots=True)
class EnrichmentBatchSummary:
    queued: int = 0
    claimed: int = 0
    ready_to_index: int = 0
    retried: int = 0
    failed: int = 0
    lost_lease: int = 0


async def run_enrichment_batch(
    session_factory: sessionmaker[Session],
    client: EnrichmentClient,
    settings: PipelineSettings,
    *,
    worker_id: str,
    batch_size: int,
) -> EnrichmentBatchSummary:
    summary = EnrichmentBatchSummary()
    with session_factory.begin() as session:
        machine = PipelineStateMachine(session, settings)
        summary.queued = machine.queue_discovered()
        records = machine.claim_for_enrichment(worker_id, batch_size)
    summary.claimed = len(records)
    if not records:
        return summary

    semaphore = asyncio.Semaphore(max(1, settings.enrichment_concurrency))

    async def _one(record: ClaimedRecord) -> None:
        async with semaphore:
            status = await _enrich_record(session_factory, client, settings, record)
        if status is None:
            summary.lost_lease += 1
        elif status == PipelineStatus.READY_TO_INDEX:
            summary.ready_to_index += 1
        elif status == PipelineStatus.AWAITING_ENRICHMENT:
            summary.retried += 1
        else:
            summary.failed += 1

    await asyncio.gather(*(_one(record) for record in records))
    return summary


async def _enrich_record(
    session_factory: sessionmaker[Session],
    client: EnrichmentClient,
    settings: PipelineSettings,
    record: ClaimedRecord,
) -> PipelineStatus | None:
    request = EnrichmentRequest(
        raw_content=record.raw_content or record.title,
        extracted_fields=record.extracted_fields,
        source_url=record.source_url,
    )
    error: str | None = None
    result = None
    try:
        result = await asyncio.wait_for(client.enrich(request), timeout=settings.enrichment_timeout_seconds)
    except asyncio.TimeoutError:
        error = f"enrichment timed out after {settings.enrichment_timeout_seconds}s"
    except EnrichmentError as exc:
        error = str(exc)
    except Exception as exc:  # noqa: BLE001
        error = f"{type(exc).__name__}: {exc}"

    try:
        with session_factory.begin() as session:
            machine = PipelineStateMachine(session, settings)
            if result is not None and result.structured_data:
                return machine.complete_enrichment(record.id, result.structured_data, result.confidence)
            return machine.fail_enrichment(record.id, error or "enrichment returned no structured data")
    except InvalidTransitionError as exc:
        # Lease was reaped and handed to another worker while we waited.
        logger.warning(f"Record {record.id}: {exc}")
        return None


def main() -> int:
    parser = argparse.ArgumentParser(description="Staging record enrichment worker")
    add_loop_arguments(parser, batch_size=20, interval=60)
    args = parser.parse_args()

    load_env_if_present()
    configure_logging()
    settings = get_settings()
    session_factory = get_session_factory()
    worker_id = args.worker_id or default_worker_id("enrich")

    async def _batch() -> EnrichmentBatchSummary:
        async with HttpEnrichmentClient(settings) as client:
            return await run_enrichment_batch(
                session_factory, client, settings, worker_id=worker_id, batch_size=args.batch_size
            )

    def _step() -> None:
        started_at = datetime.now(tz=timezone.utc).isoformat()
        summary = asyncio.run(_batch())
        log_event(logger, {"event": "enrichment_batch_summary", "started_at": started_at, **asdict(summary)})

    return run_loop(_step, once=args.once, interval=args.interval, logger=logger)


if __name__ == "__main__":
    raise SystemExit(main())
