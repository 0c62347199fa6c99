"""Source model: one crawl target and its learned operating state.

A Source is never deleted. Repeated failure quarantines it (`enabled=false`,
`quarantined_at` set) and only an operator action brings it back.
Health, rate limit and cadence are per-row fields so every worker process sees
the same state; they are mutated by the scheduler and the self-healing loop
through `ingestion.core.source_registry`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base, CreatedAtMixin, JSONType, UpdatedAtMixin, UUIDPrimaryKeyMixin
from app.core.clock import as_utc


DEFAULT_HEALTH_SCORE = 70
DEFAULT_RATE_LIMIT_MS = 200


class ExtractionMethod(str, Enum):
    AUTO = "auto"
    HYDRATION = "hydration"
    JSON_LD = "json_ld"
    FEED = "feed"
    DOM = "dom"


class FetcherType(str, Enum):
    STATIC = "static"
    PROXY = "proxy"


class Source(UUIDPrimaryKeyMixin, CreatedAtMixin, UpdatedAtMixin, Base):
    __tablename__ = "sources"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    quarantined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    quarantine_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tier: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=3)
    health_score: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_HEALTH_SCORE)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_scrapes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_events_scraped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    rate_limit_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_RATE_LIMIT_MS)
    rate_limit_escalations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rate_limit_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    preferred_method: Mapped[str] = mapped_column(String(16), nullable=False, default=ExtractionMethod.AUTO.value)
    fetcher_type: Mapped[str] = mapped_column(String(16), nullable=False, default=FetcherType.STATIC.value)
    detected_cms: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    dom_selectors: Mapped[Optional[list[str]]] = mapped_column(JSONType, nullable=True)

    next_scrape_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    flagged_for_review_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "quarantined_at IS NULL OR enabled = false",
            name="ck_sources_quarantine_implies_disabled",
        ),
        CheckConstraint(
            "health_score >= 0 AND health_score <= 100",
            name="ck_sources_health_score_range",
        ),
        CheckConstraint("tier >= 1 AND tier <= 3", name="ck_sources_tier_range"),
        Index("ix_sources_due", "enabled", "next_scrape_at"),
        Index("ix_sources_tier_health", "tier", "health_score"),
    )

    @property
    def is_quarantined(self) -> bool:
        return self.quarantined_at is not None

    def is_due(self, now: datetime) -> bool:
        if not self.enabled or self.is_quarantined:
            return False
        due_at = as_utc(self.next_scrape_at)
        return due_at is None or due_at <= now

    def __repr__(self) -> str:
        return f"<Source {self.name!r} tier={self.tier} health={self.health_score} enabled={self.enabled}>"
