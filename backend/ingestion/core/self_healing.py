from __future__ import annotations

"""Self-healing feedback loop.

Purely reactive: it reads FailureLogEntry rows and Source counters and acts on
the registry. It never touches a job or staging record, so it can run on its
own cadence without blocking the pipeline.

One pass (`run_once`):
1. Escalate the rate limit once per unhandled blocking entry (401/403/429 or
   challenge page), stamping `handled_at` so a retry of this pass is a no-op.
2. Quarantine sources whose failure streak reached the threshold.
3. Upgrade static fetchers to proxy after repeated blocks, when proxies exist.
4. Flag sources that keep yielding zero events for operator review.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.settings import PipelineSettings
from app.models.failure_log import ZERO_YIELD_TYPES, FailureLogEntry, FailureType
from app.models.source import FetcherType, Source
from ingestion.core.source_registry import SourceRegistry

logger = logging.getLogger("lcl.ingestion.self_healing")

BLOCKING_FAILURE_TYPES = (FailureType.FETCH_ERROR, FailureType.RATE_LIMITED)


@dataclass(slots=True)
class HealingReport:
    escalated: list[dict[str, Any]] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)
    upgraded: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    entries_handled: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SelfHealingMonitor:
    def __init__(
        self,
        session: Session,
        settings: Optional[PipelineSettings] = None,
        *,
        registry: Optional[SourceRegistry] = None,
    ) -> None:
        self._session = session
        self._settings = settings or PipelineSettings()
        self._registry = registry or SourceRegistry(session, self._settings)

    def run_once(self) -> HealingReport:
        report = HealingReport()
        self._escalate_blocking_entries(report)
        self._quarantine_sweep(report)
        if self._settings.proxy_urls:
            self._upgrade_fetchers(report)
        self._flag_zero_yield(report)
        if report.escalated or report.quarantined or report.upgraded or report.flagged:
            logger.info(
                f"Self-healing pass: escalated={len(report.escalated)} quarantined={len(report.quarantined)} "
                f"upgraded={len(report.upgraded)} flagged={len(report.flagged)}"
            )
        return report

    # --- steps ---------------------------------------------------------------------

    def _escalate_blocking_entries(self, report: HealingReport) -> None:
        self._session.flush()
        stmt = (
            select(FailureLogEntry)
            .where(
                FailureLogEntry.handled_at.is_(None),
                FailureLogEntry.error_type.in_(BLOCKING_FAILURE_TYPES),
            )
            .order_by(FailureLogEntry.created_at.asc())
            .with_for_update(skip_locked=True)
        )
        now = utcnow()
        for entry in self._session.execute(stmt).scalars().all():
            entry.handled_at = now
            report.entries_handled += 1
            if not entry.is_blocking:
                continue
            new_limit = self._registry.escalate_rate_limit(
                entry.source_id,
                entry.status_code,
                blocked=entry.blocked,
            )
            if new_limit is not None:
                report.escalated.append(
                    {"source_id": str(entry.source_id), "status_code": entry.status_code, "rate_limit_ms": new_limit}
                )

    def _quarantine_sweep(self, report: HealingReport) -> None:
        self._session.flush()
        stmt = select(Source.id).where(
            Source.quarantined_at.is_(None),
            Source.consecutive_failures >= self._settings.quarantine_threshold,
        )
        for source_id in self._session.execute(stmt).scalars().all():
            reason = f"failure streak reached {self._settings.quarantine_threshold} (self-healing sweep)"
            if self._registry.quarantine(source_id, reason):
                report.quarantined.append(str(source_id))

    def _upgrade_fetchers(self, report: HealingReport) -> None:
        since = utcnow() - timedelta(days=self._settings.review_window_days)
        stmt = (
            select(FailureLogEntry.source_id, func.count())
            .join(Source, Source.id == FailureLogEntry.source_id)
            .where(
                FailureLogEntry.created_at >= since,
                FailureLogEntry.blocked.is_(True),
                Source.fetcher_type == FetcherType.STATIC.value,
            )
            .group_by(FailureLogEntry.source_id)
        )
        for source_id, blocks in self._session.execute(stmt).all():
            if blocks < self._settings.proxy_upgrade_blocks:
                continue
            if self._registry.upgrade_fetcher(source_id):
                report.upgraded.append(str(source_id))

    def _flag_zero_yield(self, report: HealingReport) -> None:
        runs = self._settings.review_zero_yield_runs
        since = utcnow() - timedelta(days=self._settings.review_window_days)
        candidates = (
            select(FailureLogEntry.source_id)
            .join(Source, Source.id == FailureLogEntry.source_id)
            .where(
                FailureLogEntry.created_at >= since,
                FailureLogEntry.error_type.in_(ZERO_YIELD_TYPES),
                Source.flagged_for_review_at.is_(None),
            )
            .distinct()
        )
        for source_id in self._session.execute(candidates).scalars().all():
            if self._is_zero_yield(source_id, runs, since):
                reason = f"{runs} consecutive runs found zero events"
                if self._registry.flag_for_review(source_id, reason):
                    report.flagged.append(str(source_id))

    def _is_zero_yield(self, source_id: uuid.UUID, runs: int, since) -> bool:
        entries = self._session.execute(
            select(FailureLogEntry)
            .where(FailureLogEntry.source_id == source_id, FailureLogEntry.created_at >= since)
            .order_by(FailureLogEntry.created_at.desc())
            .limit(runs)
        ).scalars().all()
        if len(entries) < runs:
            return False
        if any(e.error_type not in ZERO_YIELD_TYPES or e.events_found != 0 for e in entries):
            return False
        # A success after the oldest of these runs breaks the streak.
        source = self._registry.get(source_id)
        last_success = as_utc(source.last_success_at)
        oldest = as_utc(entries[-1].created_at)
        return last_success is None or oldest is None or last_success < oldest
