from __future__ import annotations

"""Source registry: due-source selection, health feedback and learned strategy.

Trust & governance intent:
- Every mutation is a single-row read-modify-write under a row lock, so
  concurrent workers never lose an update to health or rate limit.
- Quarantine is automatic once consecutive failed jobs reach the threshold and
  is only undone by an explicit operator action (`set_enabled`, `reset_health`).
- The rate limit is raised only by `escalate_rate_limit`; it decays one step at a
  time on sustained success.
- Seeding from YAML never overwrites learned fields.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import yaml
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.settings import PipelineSettings
from app.models.failure_log import BLOCKING_STATUS_CODES
from app.models.scrape_job import JobStatus, ScrapeJob
from app.models.source import (
    DEFAULT_HEALTH_SCORE,
    ExtractionMethod,
    FetcherType,
    Source,
)
from ingestion.core.health import HealthMonitor

logger = logging.getLogger("lcl.ingestion.registry")

G4_CITIES = ("amsterdam", "rotterdam", "den haag", "denhaag", "the hague", "utrecht")
CENTRUM_POPULATION = 50_000

_CITY_DOMAIN_PATTERNS = (
    re.compile(r"visit(\w+)\.nl", re.I),
    re.compile(r"uit(\w+)\.nl", re.I),
    re.compile(r"ontdek(\w+)\.nl", re.I),
    re.compile(r"beleef(\w+)\.nl", re.I),
    re.compile(r"agenda\.(\w+)\.nl", re.I),
    re.compile(r"(\w+)\.nu", re.I),
)
_GENERIC_HOST_PARTS = {"www", "agenda", "events", "tickets", "nl", "nu", "com"}


@dataclass(frozen=True, slots=True)
class ScrapeOutcome:
    success: bool
    events_found: int = 0
    strategy: Optional[str] = None
    error_type: Optional[str] = None
    status_code: Optional[int] = None
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SourceTarget:
    """Detached snapshot of the fields the fetch gate and extractors need."""

    id: uuid.UUID
    name: str
    url: str
    tier: int
    rate_limit_ms: int
    fetcher_type: str
    preferred_method: str
    detected_cms: Optional[str]
    dom_selectors: tuple[str, ...]
    enabled: bool
    quarantined: bool

    @classmethod
    def from_source(cls, source: Source) -> "SourceTarget":
        return cls(
            id=source.id,
            name=source.name,
            url=source.url,
            tier=source.tier,
            rate_limit_ms=source.rate_limit_ms,
            fetcher_type=source.fetcher_type,
            preferred_method=source.preferred_method,
            detected_cms=source.detected_cms,
            dom_selectors=tuple(source.dom_selectors or ()),
            enabled=source.enabled,
            quarantined=source.quarantined_at is not None,
        )


@dataclass(frozen=True, slots=True)
class SourceSeed:
    key: str
    name: str
    url: str
    enabled: bool = True
    tier: Optional[int] = None
    population: Optional[int] = None
    fetcher_type: str = FetcherType.STATIC.value
    dom_selectors: tuple[str, ...] = field(default_factory=tuple)


def extract_city_from_domain(url: str) -> Optional[str]:
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return None
    for pattern in _CITY_DOMAIN_PATTERNS:
        match = pattern.search(host)
        if match:
            return match.group(1).lower()
    for part in host.split("."):
        if part not in _GENERIC_HOST_PARTS:
            return part
    return None


def assign_tier(url: str, population: Optional[int] = None, city: Optional[str] = None) -> int:
    """Tier 1 for the four largest cities, tier 2 for regional centres, tier 3 otherwise."""
    city = (city or extract_city_from_domain(url) or "").lower()
    if city and any(city == g4.replace(" ", "") or city == g4 for g4 in G4_CITIES):
        return 1
    if population is not None and population >= CENTRUM_POPULATION:
        return 2
    return 3


def due_source_filter(now: datetime) -> tuple[Any, ...]:
    """WHERE terms selecting sources that may be scraped at `now`."""
    return (
        Source.enabled.is_(True),
        Source.quarantined_at.is_(None),
        or_(Source.next_scrape_at.is_(None), Source.next_scrape_at <= now),
    )


def priority_for_tier(tier: int) -> int:
    return {1: 3, 2: 2}.get(int(tier or 3), 1)


def load_sources_yaml(path: Path) -> list[SourceSeed]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not isinstance(raw.get("sources"), dict):
        raise ValueError("Invalid sources.yaml: expected top-level mapping with 'sources'.")

    seeds: list[SourceSeed] = []
    for key, cfg in raw["sources"].items():
        if not isinstance(cfg, dict) or not cfg.get("url"):
            continue
        selectors = cfg.get("dom_selectors") or ()
        seeds.append(
            SourceSeed(
                key=str(key),
                name=str(cfg.get("name") or key),
                url=str(cfg["url"]),
                enabled=bool(cfg.get("enabled", True)),
                tier=int(cfg["tier"]) if cfg.get("tier") is not None else None,
                population=int(cfg["population"]) if cfg.get("population") is not None else None,
                fetcher_type=str(cfg.get("fetcher_type", FetcherType.STATIC.value)),
                dom_selectors=tuple(str(s) for s in selectors),
            )
        )
    return seeds


class SourceRegistry:
    """Source persistence and health feedback, bound to a caller-owned session."""

    def __init__(self, session: Session, settings: Optional[PipelineSettings] = None) -> None:
        self._session = session
        self._settings = settings or PipelineSettings()
        self._monitor = HealthMonitor.from_settings(self._settings)

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    # --- reads -----------------------------------------------------------------

    def get(self, source_id: uuid.UUID) -> Source:
        source = self._session.get(Source, source_id)
        if source is None:
            raise LookupError(f"Source {source_id} not found")
        return source

    def get_target(self, source_id: uuid.UUID) -> SourceTarget:
        return SourceTarget.from_source(self.get(source_id))

    def get_due_sources(self, limit: int, tier: Optional[int] = None) -> list[Source]:
        """Enabled, non-quarantined sources whose next scrape is due; tier asc, health desc."""
        stmt = (
            select(Source)
            .where(*due_source_filter(utcnow()))
            .order_by(Source.tier.asc(), Source.health_score.desc(), Source.created_at.asc())
            .limit(limit)
        )
        if tier is not None:
            stmt = stmt.where(Source.tier == tier)
        return list(self._session.execute(stmt).scalars().all())

    def list_for_review(self) -> list[Source]:
        stmt = (
            select(Source)
            .where(or_(Source.quarantined_at.is_not(None), Source.flagged_for_review_at.is_not(None)))
            .order_by(Source.tier.asc(), Source.health_score.asc())
        )
        return list(self._session.execute(stmt).scalars().all())

    # --- feedback ----------------------------------------------------------------

    def record_outcome(self, source_id: uuid.UUID, outcome: ScrapeOutcome) -> Source:
        source = self._lock(source_id)
        now = utcnow()
        source.last_scraped_at = now
        source.total_scrapes = (source.total_scrapes or 0) + 1

        if outcome.success:
            source.health_score = self._monitor.score_after_success(source.health_score)
            source.consecutive_successes = (source.consecutive_successes or 0) + 1
            source.consecutive_failures = 0
            source.last_success_at = now
            source.total_events_scraped = (source.total_events_scraped or 0) + outcome.events_found
            source.next_scrape_at = now + timedelta(hours=self._settings.interval_hours_for_tier(source.tier))
            decayed = self._monitor.decayed_rate_limit(source.rate_limit_ms, source.consecutive_successes)
            if decayed != source.rate_limit_ms:
                logger.info(f"Source {source.name}: rate limit decayed {source.rate_limit_ms}ms -> {decayed}ms")
                source.rate_limit_ms = decayed
                source.rate_limit_changed_at = now
            return source

        source.health_score = self._monitor.score_after_failure(source.health_score)
        source.consecutive_failures = (source.consecutive_failures or 0) + 1
        source.consecutive_successes = 0
        source.last_failure_at = now
        source.last_error = outcome.message
        source.next_scrape_at = now + timedelta(hours=self._settings.interval_hours_for_tier(source.tier))
        logger.warning(
            f"Source {source.name} failure [{outcome.error_type}]: "
            f"health={source.health_score} streak={source.consecutive_failures}"
        )
        if self._monitor.should_quarantine(source.consecutive_failures) and source.quarantined_at is None:
            self._quarantine(
                source,
                f"{source.consecutive_failures} consecutive failures (last: {outcome.error_type or 'unknown'})",
            )
        return source

    def escalate_rate_limit(
        self,
        source_id: uuid.UUID,
        status_code: Optional[int] = None,
        *,
        blocked: bool = False,
    ) -> Optional[int]:
        """Double `rate_limit_ms` after a blocking response. Returns the new value, or None if not blocking."""
        if status_code not in BLOCKING_STATUS_CODES and not blocked:
            return None
        source = self._lock(source_id)
        previous = source.rate_limit_ms
        source.rate_limit_ms = self._monitor.escalated_rate_limit(previous)
        source.rate_limit_escalations = (source.rate_limit_escalations or 0) + 1
        source.rate_limit_changed_at = utcnow()
        logger.warning(
            f"Source {source.name}: rate limit escalated {previous}ms -> {source.rate_limit_ms}ms "
            f"(status={status_code}, blocked={blocked})"
        )
        return source.rate_limit_ms

    def promote_strategy_if_stable(self, source_id: uuid.UUID) -> Optional[str]:
        """Pin `preferred_method` when the last N productive jobs all used one strategy."""
        self._session.flush()
        window = self._settings.strategy_promotion_window
        stmt = (
            select(ScrapeJob.strategy)
            .where(
                ScrapeJob.source_id == source_id,
                ScrapeJob.status == JobStatus.COMPLETED,
                ScrapeJob.events_scraped > 0,
                ScrapeJob.strategy.is_not(None),
            )
            .order_by(ScrapeJob.completed_at.desc())
            .limit(window)
        )
        strategies = list(self._session.execute(stmt).scalars().all())
        if len(strategies) < window or len(set(strategies)) != 1:
            return None
        strategy = strategies[0]
        source = self._lock(source_id)
        if source.preferred_method == strategy:
            return None
        logger.info(f"Source {source.name}: preferred method {source.preferred_method} -> {strategy}")
        source.preferred_method = strategy
        return strategy

    def schedule_next_scrape(self, source_id: uuid.UUID, at: Optional[datetime]) -> Source:
        """Move the source's cadence; None makes it due immediately."""
        source = self._lock(source_id)
        source.next_scrape_at = at
        return source

    def set_detected_cms(self, source_id: uuid.UUID, cms: Optional[str]) -> None:
        if not cms or cms == "unknown":
            return
        source = self.get(source_id)
        if source.detected_cms != cms:
            source.detected_cms = cms

    def upgrade_fetcher(self, source_id: uuid.UUID) -> bool:
        source = self._lock(source_id)
        if source.fetcher_type == FetcherType.PROXY.value:
            return False
        source.fetcher_type = FetcherType.PROXY.value
        logger.info(f"Source {source.name}: fetcher upgraded to proxy")
        return True

    def flag_for_review(self, source_id: uuid.UUID, reason: str) -> bool:
        source = self._lock(source_id)
        if source.flagged_for_review_at is not None:
            return False
        source.flagged_for_review_at = utcnow()
        source.review_reason = reason
        logger.warning(f"Source {source.name} flagged for review: {reason}")
        return True

    def quarantine(self, source_id: uuid.UUID, reason: str) -> bool:
        source = self._lock(source_id)
        if source.quarantined_at is not None:
            return False
        self._quarantine(source, reason)
        return True

    # --- operator actions ---------------------------------------------------------

    def set_enabled(self, source_id: uuid.UUID, enabled: bool) -> Source:
        source = self._lock(source_id)
        if enabled:
            source.quarantined_at = None
            source.quarantine_reason = None
            source.consecutive_failures = 0
            source.enabled = True
        else:
            source.enabled = False
        return source

    def reset_health(self, source_id: uuid.UUID) -> Source:
        source = self._lock(source_id)
        source.health_score = DEFAULT_HEALTH_SCORE
        source.consecutive_failures = 0
        source.consecutive_successes = 0
        source.rate_limit_ms = self._settings.rate_limit_floor_ms
        source.rate_limit_changed_at = utcnow()
        source.quarantined_at = None
        source.quarantine_reason = None
        source.flagged_for_review_at = None
        source.review_reason = None
        source.enabled = True
        source.next_scrape_at = None
        return source

    def seed_sources(self, seeds: list[SourceSeed]) -> tuple[int, int]:
        """Upsert by URL. Learned fields (health, rate limit, strategy) are left untouched."""
        created = updated = 0
        for seed in seeds:
            existing = self._session.execute(select(Source).where(Source.url == seed.url)).scalar_one_or_none()
            tier = seed.tier or assign_tier(seed.url, seed.population)
            if existing is None:
                self._session.add(
                    Source(
                        name=seed.name,
                        url=seed.url,
                        enabled=seed.enabled,
                        tier=tier,
                        fetcher_type=seed.fetcher_type,
                        dom_selectors=list(seed.dom_selectors) or None,
                        preferred_method=ExtractionMethod.AUTO.value,
                        rate_limit_ms=self._settings.rate_limit_floor_ms,
                    )
                )
                self._session.flush()
                created += 1
                continue
            existing.name = seed.name
            existing.tier = tier
            existing.fetcher_type = seed.fetcher_type
            if seed.dom_selectors:
                existing.dom_selectors = list(seed.dom_selectors)
            if not seed.enabled:
                existing.enabled = False
            updated += 1
        self._session.flush()
        return created, updated

    # --- internals ------------------------------------------------------------------

    def _lock(self, source_id: uuid.UUID) -> Source:
        self._session.flush()
        stmt = (
            select(Source)
            .where(Source.id == source_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        source = self._session.execute(stmt).scalar_one_or_none()
        if source is None:
            raise LookupError(f"Source {source_id} not found")
        return source

    def _quarantine(self, source: Source, reason: str) -> None:
        source.enabled = False
        source.quarantined_at = utcnow()
        source.quarantine_reason = reason
        logger.error(f"Source {source.name} quarantined: {reason}")

