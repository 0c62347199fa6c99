"""JSON-LD strategy: schema.org `Event` objects from `application/ld+json` blocks."""

from __future__ import annotations

import json
from typing import Any, Iterator, Optional
from urllib.parse import urljoin

from ingestion.extraction.dates import parse_time, parse_to_iso_date
from ingestion.extraction.hydration import location_of, text_of
from ingestion.extraction.json_repair import loads_lenient
from ingestion.extraction.types import EventCandidate, ExtractionContext, Page, StrategyResult

EVENT_TYPES = {
    "event", "musicevent", "theaterevent", "comedyevent", "danceevent", "festival", "exhibitionevent",
    "sportsevent", "educationevent", "childrensevent", "literaryevent", "screeningevent",
    "socialevent", "foodevent", "businessevent", "visualartsevent", "saleevent", "courseinstance",
}

CATEGORY_BY_TYPE = {
    "musicevent": "music",
    "theaterevent": "theatre",
    "comedyevent": "comedy",
    "danceevent": "dance",
    "festival": "festival",
    "exhibitionevent": "exhibition",
    "visualartsevent": "exhibition",
    "sportsevent": "sports",
    "educationevent": "education",
    "courseinstance": "education",
    "childrensevent": "family",
    "literaryevent": "literature",
    "screeningevent": "film",
    "foodevent": "food",
}


def _types(node: dict[str, Any]) -> list[str]:
    raw = node.get("@type")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [str(t).rsplit("/", 1)[-1].lower() for t in raw]


def _is_event(node: dict[str, Any]) -> bool:
    return any(t in EVENT_TYPES for t in _types(node))


def iter_event_nodes(data: Any, depth: int = 0) -> Iterator[dict[str, Any]]:
    """Walk `@graph`, `ItemList.itemListElement` and plain arrays for Event nodes."""
    if depth > 6:
        return
    if isinstance(data, list):
        for item in data:
            yield from iter_event_nodes(item, depth + 1)
        return
    if not isinstance(data, dict):
        return
    if _is_event(data):
        yield data
        return
    if "@graph" in data:
        yield from iter_event_nodes(data["@graph"], depth + 1)
    elements = data.get("itemListElement")
    if elements is not None:
        yield from iter_event_nodes(elements, depth + 1)
    if "item" in data and isinstance(data["item"], dict):
        yield from iter_event_nodes(data["item"], depth + 1)


def _offer_url(offers: Any) -> Optional[str]:
    if isinstance(offers, list):
        for offer in offers:
            url = _offer_url(offer)
            if url:
                return url
        return None
    if isinstance(offers, dict):
        return text_of(offers.get("url"))
    return None


def candidate_from_node(node: dict[str, Any], base_url: str) -> Optional[EventCandidate]:
    title = text_of(node.get("name"))
    if not title or len(title) < 3:
        return None
    start = text_of(node.get("startDate")) or ""
    detail = text_of(node.get("url")) or _offer_url(node.get("offers"))
    image = text_of(node.get("image"))
    category = next((CATEGORY_BY_TYPE[t] for t in _types(node) if t in CATEGORY_BY_TYPE), None)
    return EventCandidate(
        title=title,
        date=start,
        iso_date=parse_to_iso_date(start),
        start_time=parse_time(start.split("T", 1)[1]) if "T" in start else None,
        location=location_of(node.get("location")),
        description=text_of(node.get("description")),
        detail_url=urljoin(base_url, detail) if detail else None,
        image_url=urljoin(base_url, image) if image else None,
        category=category,
        raw_content=json.dumps(node, ensure_ascii=False, default=str)[:20_000],
    )


def extract_json_ld(page: Page, context: ExtractionContext) -> StrategyResult:
    if not page.looks_like_markup:
        return StrategyResult(metadata={"reason": "not_html"})

    blocks = page.soup.find_all("script", attrs={"type": lambda v: bool(v) and "ld+json" in v.lower()})
    metadata: dict[str, Any] = {"blocks": len(blocks)}
    if not blocks:
        metadata["reason"] = "no_json_ld"
        return StrategyResult(metadata=metadata)

    events: list[EventCandidate] = []
    errors = 0
    for block in blocks:
        raw = block.string or block.get_text()
        if not raw or not raw.strip():
            continue
        data = loads_lenient(raw.strip())
        if data is None:
            errors += 1
            continue
        for node in iter_event_nodes(data):
            candidate = candidate_from_node(node, context.url)
            if candidate is not None:
                events.append(candidate)

    if errors:
        metadata["parse_errors"] = errors
    if not events:
        metadata["reason"] = "no_event_nodes"
    return StrategyResult(events=events, metadata=metadata)
