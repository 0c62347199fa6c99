from __future__ import annotations

"""Seed the source registry from YAML.

Upserts by URL; learned fields (health, rate limit, preferred method) are never
overwritten, so re-running after a config change is safe.

Run:
  python ingestion/jobs/seed_sources.py
  python ingestion/jobs/seed_sources.py --file /etc/lcl/sources.yaml
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.db import get_session_factory  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
from app.core.settings import get_settings  # noqa: E402
from ingestion.core.source_registry import SourceRegistry, load_sources_yaml  # noqa: E402
from ingestion.jobs.common import configure_logging, log_event  # noqa: E402

logger = logging.getLogger("lcl.jobs.seed")

DEFAULT_SOURCES_YAML = Path(__file__).resolve().parents[1] / "config" / "sources.yaml"


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed crawl sources from YAML")
    parser.add_argument("--file", default=None, help="Path to sources.yaml (default: LCL_SOURCES_YAML or bundled)")
    args = parser.parse_args()

    load_env_if_present()
    configure_logging()
    settings = get_settings()
    path = Path(args.file or settings.sources_yaml or os.environ.get("LCL_SOURCES_YAML") or DEFAULT_SOURCES_YAML)

    try:
        seeds = load_sources_yaml(path)
    except (OSError, ValueError) as exc:
        logger.error(f"Cannot load {path}: {exc}")
        return 1

    with get_session_factory().begin() as session:
        created, updated = SourceRegistry(session, settings).seed_sources(seeds)

    log_event(
        logger,
        {"event": "seed_sources_summary", "file": str(path), "seeds": len(seeds), "created": created, "updated": updated},
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
