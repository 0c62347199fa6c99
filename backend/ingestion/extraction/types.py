"""Value types shared by the extraction strategies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from bs4 import BeautifulSoup


class Strategy(str, Enum):
    HYDRATION = "hydration"
    JSON_LD = "json_ld"
    FEED = "feed"
    DOM = "dom"


class Page:
    """Fetched content with a lazily built, shared BeautifulSoup tree."""

    def __init__(self, content: str) -> None:
        self.text = content or ""
        self._soup: Optional[BeautifulSoup] = None

    @property
    def soup(self) -> BeautifulSoup:
        if self._soup is None:
            self._soup = BeautifulSoup(self.text, "html.parser")
        return self._soup

    @property
    def looks_like_markup(self) -> bool:
        head = self.text.lstrip()[:512].lower()
        return head.startswith("<") and not head.startswith("<?xml") and "<rss" not in head and "<feed" not in head


@dataclass(frozen=True, slots=True)
class ExtractionContext:
    url: str
    detected_cms: Optional[str] = None
    preferred_method: Optional[str] = None
    dom_selectors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EventCandidate:
    """One event as read off a page, before enrichment."""

    title: str
    date: str = ""
    iso_date: Optional[str] = None
    start_time: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    detail_url: Optional[str] = None
    image_url: Optional[str] = None
    category: Optional[str] = None
    raw_content: Optional[str] = None

    def to_fields(self) -> dict[str, Any]:
        fields = {
            "title": self.title,
            "date": self.date,
            "iso_date": self.iso_date,
            "start_time": self.start_time,
            "location": self.location,
            "description": self.description,
            "detail_url": self.detail_url,
            "image_url": self.image_url,
            "category": self.category,
        }
        return {k: v for k, v in fields.items() if v not in (None, "")}


@dataclass(slots=True)
class StrategyResult:
    """What a single strategy reports back to the waterfall."""

    events: list[EventCandidate] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.events)


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    success: bool
    events: tuple[EventCandidate, ...]
    strategy: Optional[Strategy]
    confidence: float
    metadata: dict[str, Any]
