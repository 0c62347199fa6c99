from __future__ import annotations

"""Indexing worker: lease ready records and hand them to the publication store.

Run:
  python ingestion/jobs/run_indexing_worker.py --once
"""

import argparse
import logging
import sys
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.core.db import get_session_factory  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
from app.core.settings import PipelineSettings, get_settings  # noqa: E402
from ingestion.core.errors import InvalidTransitionError  # noqa: E402
from ingestion.core.pipeline import PipelineStateMachine  # noqa: E402
from ingestion.core.publication import PublicationStore, SqlPublicationStore  # noqa: E402
from ingestion.jobs.common import (  # noqa: E402
    add_loop_arguments,
    configure_logging,
    default_worker_id,
    log_event,
    run_loop,
)

logger = logging.getLogger("lcl.jobs.indexing")


def run_indexing_batch(
    session_factory: sessionmaker[Session],
    settings: PipelineSettings,
    *,
    worker_id: str,
    batch_size: int,
    store_factory: Callable[[Session], PublicationStore] = SqlPublicationStore,
) -> dict[str, int]:
    with session_factory.begin() as session:
        records = PipelineStateMachine(session, settings).claim_for_indexing(worker_id, batch_size)

    outcomes: Counter[str] = Counter()
    for record in records:
        try:
            with session_factory.begin() as session:
                status = PipelineStateMachine(session, settings).index_record(record.id, store_factory(session))
            outcomes[status.value] += 1
        except InvalidTransitionError as exc:
            logger.warning(f"Record {record.id}: {exc}")
            outcomes["lost_lease"] += 1
    return {"claimed": len(records), **outcomes}


def main() -> int:
    parser = argparse.ArgumentParser(description="Staging record indexing worker")
    add_loop_arguments(parser, batch_size=50, interval=60)
    args = parser.parse_args()

    load_env_if_present()
    configure_logging()
    settings = get_settings()
    session_factory = get_session_factory()
    worker_id = args.worker_id or default_worker_id("index")

    def _step() -> None:
        started_at = datetime.now(tz=timezone.utc).isoformat()
        counts = run_indexing_batch(session_factory, settings, worker_id=worker_id, batch_size=args.batch_size)
        log_event(logger, {"event": "indexing_batch_summary", "started_at": started_at, **counts})

    return run_loop(_step, once=args.once, interval=args.interval, logger=logger)


if __name__ == "__main__":
    raise SystemExit(main())
