"""
DOM strategy: CSS selectors over the rendered listing markup.

Selector precedence: operator-configured selectors for the source, then the
selectors for the detected CMS, then a generic set that matches most agenda
templates. The first selector group that yields events wins.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Optional
from urllib.parse import urljoin

import soupsieve
from bs4 import Tag

from ingestion.extraction.dates import DAY_MONTH_RE, ISO_RE, MONTH_DAY_RE, NUMERIC_DMY_RE, parse_time, parse_to_iso_date
from ingestion.extraction.types import EventCandidate, ExtractionContext, Page, StrategyResult

logger = logging.getLogger(__name__)

CMS_SELECTORS: dict[str, tuple[str, ...]] = {
    "wordpress": (
        "article.type-tribe_events",
        ".tribe-events-calendar-list__event-row",
        ".tribe-events-list-event",
        ".em-event",
        "article.event",
    ),
    "wix": ("[data-hook='event-list-item']", ".wix-events-list-item"),
    "squarespace": (".eventlist-event", ".event-item", ".summary-item"),
    "drupal": (".view-events .views-row", ".node--type-event"),
}

DEFAULT_SELECTORS: tuple[str, ...] = (
    "article.event",
    ".event-item",
    ".event-card",
    ".agenda-item",
    ".calendar-event",
    "li.event",
    ".post-item",
    ".activity-card",
)

TITLE_SELECTORS = (
    "[itemprop='name']", "h1", "h2", "h3", "h4", ".title", ".event-title", ".tribe-events-calendar-list__event-title",
    ".eventlist-title", "[data-hook='title']", "[class*=title]", "a",
)
DATE_SELECTORS = (
    "time[datetime]", "time", "[itemprop='startDate']", ".date", ".event-date", ".datum", ".eventlist-meta-date",
    ".tribe-event-date-start", "[data-hook='date']", ".when", "[class*=date]", "[datetime]",
)
LOCATION_SELECTORS = (
    "[itemprop='location']", ".location", ".venue", ".event-location", ".locatie", ".eventlist-meta-address",
    ".tribe-events-venue", "[data-hook='location']", ".where",
)
DESCRIPTION_SELECTORS = (".description", ".excerpt", ".summary", ".event-description", "p")

MIN_TITLE_CHARS = 3
_BACKGROUND_RE = re.compile(r"""background(?:-image)?\s*:[^;]*url\(\s*['"]?([^'")]+)""", re.I)


def _select_text(node: Tag, selectors: Iterable[str]) -> Optional[str]:
    for selector in selectors:
        found = node.select_one(selector)
        if found is None:
            continue
        text = " ".join(found.get_text(" ", strip=True).split())
        if text:
            return text
    return None


def _date_text(node: Tag) -> Optional[str]:
    for selector in DATE_SELECTORS:
        found = node.select_one(selector)
        if found is None:
            continue
        for attr in ("datetime", "content", "data-date"):
            value = found.get(attr)
            if value:
                return str(value).strip()
        text = " ".join(found.get_text(" ", strip=True).split())
        if text:
            return text
    if node.get("data-date"):
        return str(node["data-date"]).strip()
    card_text = " ".join(node.get_text(" ", strip=True).split())
    for pattern in (ISO_RE, NUMERIC_DMY_RE, DAY_MONTH_RE, MONTH_DAY_RE):
        match = pattern.search(card_text)
        if match:
            return match.group(0)
    return None


def _link(node: Tag, base_url: str) -> Optional[str]:
    anchor = node if node.name == "a" and node.get("href") else node.find("a", href=True)
    if anchor is None:
        return None
    href = str(anchor["href"]).strip()
    if not href or href.startswith(("#", "javascript:", "mailto:")):
        return None
    return urljoin(base_url, href)


def _image(node: Tag, base_url: str) -> Optional[str]:
    img = node.find("img")
    if img is not None:
        src = img.get("data-src") or img.get("src")
        if src:
            return urljoin(base_url, str(src))
    for styled in [node, *node.find_all(style=True)]:
        match = _BACKGROUND_RE.search(str(styled.get("style") or ""))
        if match:
            return urljoin(base_url, match.group(1))
    return None


def candidate_from_node(node: Tag, base_url: str) -> Optional[EventCandidate]:
    title = _select_text(node, TITLE_SELECTORS)
    if not title or len(title) < MIN_TITLE_CHARS:
        return None
    date_text = _date_text(node)
    if not date_text:
        return None
    description = _select_text(node, DESCRIPTION_SELECTORS)
    if description == title:
        description = None
    return EventCandidate(
        title=title,
        date=date_text,
        iso_date=parse_to_iso_date(date_text),
        start_time=parse_time(date_text.split("T", 1)[1] if "T" in date_text else date_text),
        location=_select_text(node, LOCATION_SELECTORS),
        description=description,
        detail_url=_link(node, base_url),
        image_url=_image(node, base_url),
        raw_content=str(node)[:20_000],
    )


def selector_groups(context: ExtractionContext) -> list[tuple[str, tuple[str, ...]]]:
    groups: list[tuple[str, tuple[str, ...]]] = []
    if context.dom_selectors:
        groups.append(("operator", tuple(context.dom_selectors)))
    cms = (context.detected_cms or "").lower()
    if cms in CMS_SELECTORS:
        groups.append((cms, CMS_SELECTORS[cms]))
    groups.append(("default", DEFAULT_SELECTORS))
    return groups


def extract_dom(page: Page, context: ExtractionContext) -> StrategyResult:
    if not page.looks_like_markup:
        return StrategyResult(metadata={"reason": "not_html"})

    tried: list[str] = []
    for group, selectors in selector_groups(context):
        for selector in selectors:
            tried.append(selector)
            try:
                nodes = page.soup.select(selector)
            except soupsieve.SelectorSyntaxError as exc:
                logger.warning(f"Invalid selector {selector!r} for {context.url}: {exc}")
                continue
            events: list[EventCandidate] = []
            for node in nodes:
                candidate = candidate_from_node(node, context.url)
                if candidate is not None:
                    events.append(candidate)
            if events:
                metadata: dict[str, Any] = {"selector_group": group, "selector": selector, "matched_nodes": len(nodes)}
                return StrategyResult(events=events, metadata=metadata)

    return StrategyResult(
        metadata={
            "reason": "no_selector_matched",
            "selectors_tried": len(tried),
            "operator_selectors": bool(context.dom_selectors),
        }
    )
