"""SQLAlchemy models package.

All model modules are imported here so mapper configuration and
`Base.metadata` never depend on import order.
"""

from app.models import (  # noqa: F401
    failure_log,
    published_event,
    scrape_job,
    source,
    staging_event,
)
from app.models.failure_log import FailureLogEntry, FailureType
from app.models.published_event import PublishedEvent
from app.models.scrape_job import JobStatus, ScrapeJob
from app.models.source import ExtractionMethod, FetcherType, Source
from app.models.staging_event import PipelineStatus, StagingEvent, TerminalStateError

__all__ = [
    "ExtractionMethod",
    "FailureLogEntry",
    "FailureType",
    "FetcherType",
    "JobStatus",
    "PipelineStatus",
    "PublishedEvent",
    "ScrapeJob",
    "Source",
    "StagingEvent",
    "TerminalStateError",
]
