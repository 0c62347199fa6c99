"""Crawl pipeline core.

- Source registry and health scoring
- Fetch gate (identities, pacing, proxy fallback, block detection)
- Job scheduler and scrape runner
- Staging pipeline state machine, enrichment and publication seams
- Self-healing feedback loop
"""

from ingestion.core.fetch_gate import FetchGate, FetchResult
from ingestion.core.health import HealthMonitor
from ingestion.core.pipeline import PipelineStateMachine, StageResult
from ingestion.core.scheduler import JobFailure, JobResult, JobScheduler
from ingestion.core.scrape_runner import ScrapeRunner
from ingestion.core.self_healing import HealingReport, SelfHealingMonitor
from ingestion.core.source_registry import ScrapeOutcome, SourceRegistry, SourceTarget

__all__ = [
    "FetchGate",
    "FetchResult",
    "HealthMonitor",
    "PipelineStateMachine",
    "StageResult",
    "JobFailure",
    "JobResult",
    "JobScheduler",
    "ScrapeRunner",
    "HealingReport",
    "SelfHealingMonitor",
    "ScrapeOutcome",
    "SourceRegistry",
    "SourceTarget",
]
