from __future__ import annotations

"""Scrape worker: enqueue due sources, claim a batch, fetch -> extract -> stage -> complete/fail.

Run:
  python ingestion/jobs/run_scrape_worker.py --once
  python ingestion/jobs/run_scrape_worker.py --interval 120 --batch-size 10
"""

import argparse
import asyncio
import logging
import sys
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
from ingestion.core.fetch_gate import FetchGate  # noqa: E402
from ingestion.core.scheduler import JobScheduler  # noqa: E402
from ingestion.core.scrape_runner import ScrapeBatchSummary, ScrapeRunner  # noqa: E402
from ingestion.jobs.common import (  # noqa: E402
    add_loop_arguments,
    configure_logging,
    default_worker_id,
    log_event,
    run_loop,
)

logger = logging.getLogger("lcl.jobs.scrape")


async def run_scrape_batch(
    session_factory: sessionmaker[Session],
    settings: PipelineSettings,
    *,
    worker_id: str,
    batch_size: int,
    gate: FetchGate | None = None,
) -> ScrapeBatchSummary:
    with session_factory.begin() as session:
        enqueued = JobScheduler(session, settings).enqueue_due_sources(limit=batch_size * 4)
    if enqueued:
        logger.info(f"{len(enqueued)} due sources enqueued")

    if gate is not None:
        return await ScrapeRunner(session_factory, gate, settings, worker_id=worker_id).run_batch(batch_size)
    async with FetchGate(settings) as owned_gate:
        return await ScrapeRunner(session_factory, owned_gate, settings, worker_id=worker_id).run_batch(batch_size)


def main() -> int:
    parser = argparse.ArgumentParser(description="Event scrape worker")
    add_loop_arguments(parser, batch_size=10, interval=120)
    args = parser.parse_args()

    load_env_if_present()
    configure_logging()
    settings = get_settings()
    session_factory = get_session_factory()
    worker_id = args.worker_id or default_worker_id("scrape")

    def _step() -> None:
        started_at = datetime.now(tz=timezone.utc).isoformat()
        summary = asyncio.run(
            run_scrape_batch(session_factory, settings, worker_id=worker_id, batch_size=args.batch_size)
        )
        event = summary.to_dict()
        event.pop("reports")
        log_event(logger, {"event": "scrape_batch_summary", "started_at": started_at, **event})

    return run_loop(_step, once=args.once, interval=args.interval, logger=logger)


if __name__ == "__main__":
    raise SystemExit(main())
