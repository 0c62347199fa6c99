from __future__ import annotations

"""FailureLogEntry writers and failure classification.

Entries are append-only. The self-healing loop is their only reader besides
operators, and it only ever stamps `handled_at`.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.models.failure_log import FailureLogEntry, FailureType
from ingestion.core.errors import FetchError
from ingestion.extraction.types import ExtractionResult

logger = logging.getLogger("lcl.ingestion.failures")


def classify_fetch_error(exc: FetchError) -> FailureType:
    if exc.error_type == FailureType.RATE_LIMITED.value or exc.status_code == 429:
        return FailureType.RATE_LIMITED
    return FailureType.FETCH_ERROR


def classify_extraction_failure(result: ExtractionResult, *, operator_selectors: bool) -> FailureType:
    """parse_error when a strategy choked on its input, selector_failed when configured selectors missed."""
    metadata: dict[str, Any] = result.metadata or {}
    if metadata.get("parse_errors"):
        return FailureType.PARSE_ERROR
    if operator_selectors:
        return FailureType.SELECTOR_FAILED
    return FailureType.NO_EVENTS_FOUND


def strategy_trace_label(result: Optional[ExtractionResult]) -> Optional[str]:
    """Compact `hydration>json_ld>feed>dom` label of the strategies attempted."""
    if result is None:
        return None
    trace = (result.metadata or {}).get("trace") or []
    label = ">".join(str(step.get("strategy")) for step in trace if step.get("strategy"))
    return label[:128] or None


def record_failure(
    session: Session,
    *,
    source_id: uuid.UUID,
    error_type: FailureType,
    message: Optional[str],
    job_id: Optional[uuid.UUID] = None,
    status_code: Optional[int] = None,
    blocked: bool = False,
    events_expected: int = 0,
    events_found: int = 0,
    strategy_trace: Optional[str] = None,
) -> FailureLogEntry:
    entry = FailureLogEntry(
        source_id=source_id,
        job_id=job_id,
        error_type=error_type,
        message=(message or "")[:2000] or None,
        status_code=status_code,
        blocked=blocked,
        events_expected=events_expected,
        events_found=events_found,
        strategy_trace=strategy_trace,
    )
    session.add(entry)
    session.flush()
    logger.warning(
        f"Failure logged for source {source_id}: {error_type.value} "
        f"(status={status_code}, blocked={blocked}, found={events_found})"
    )
    return entry
