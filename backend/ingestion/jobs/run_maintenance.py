from __future__ import annotations

"""Maintenance pass: reap stalled jobs and staging leases, then one self-healing pass.

Meant to be triggered on a fixed cadence (cron / scheduler), independent of
the workers it recovers from.

Run:
  python ingestion/jobs/run_maintenance.py --once
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.core.db import get_session_factory  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
from app.core.settings import PipelineSettings, get_settings  # noqa: E402
from ingestion.core.pipeline import PipelineStateMachine  # noqa: E402
from ingestion.core.scheduler import JobScheduler  # noqa: E402
from ingestion.core.self_healing import SelfHealingMonitor  # noqa: E402
from ingestion.jobs.common import configure_logging, log_event, run_loop  # noqa: E402

logger = logging.getLogger("lcl.jobs.maintenance")


def run_maintenance_pass(session_factory: sessionmaker[Session], settings: PipelineSettings) -> dict[str, Any]:
    with session_factory.begin() as session:
        jobs_reaped = JobScheduler(session, settings).reap_stalled()
        records = PipelineStateMachine(session, settings).reap_stalled_records()

    with session_factory.begin() as session:
        report = SelfHealingMonitor(session, settings).run_once()

    return {"jobs_reaped": jobs_reaped, **records, "healing": report.to_dict()}


def main() -> int:
    parser = argparse.ArgumentParser(description="Stall recovery and self-healing pass")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between passes (default: 300)")
    args = parser.parse_args()

    load_env_if_present()
    configure_logging()
    settings = get_settings()
    session_factory = get_session_factory()

    def _step() -> None:
        started_at = datetime.now(tz=timezone.utc).isoformat()
        result = run_maintenance_pass(session_factory, settings)
        log_event(logger, {"event": "maintenance_summary", "started_at": started_at, **result})

    return run_loop(_step, once=args.once, interval=args.interval, logger=logger)


if __name__ == "__main__":
    raise SystemExit(main())
