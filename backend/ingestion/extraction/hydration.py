"""
Hydration strategy: events from client-side framework state.

Server-rendered single-page apps ship their initial state inside the page
(`__NEXT_DATA__`, `window.__NUXT__`, `__INITIAL_STATE__`, ...). That state is
the same data the site renders from, so when it contains event-like objects
it is the highest-fidelity source available.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urljoin

from ingestion.extraction.dates import parse_time, parse_to_iso_date
from ingestion.extraction.json_repair import loads_lenient, slice_balanced
from ingestion.extraction.types import EventCandidate, ExtractionContext, Page, StrategyResult

MAX_DEPTH = 10
MAX_EVENTS = 500

SCRIPT_ID_PAYLOADS = ("__NEXT_DATA__",)
GLOBAL_PAYLOADS = ("__NUXT__", "__INITIAL_STATE__", "__PRELOADED_STATE__", "__APP_DATA__", "__APOLLO_STATE__")
_GLOBAL_ASSIGN_RE = re.compile(
    r"(?:window\.)?(" + "|".join(GLOBAL_PAYLOADS) + r")\s*=\s*",
)

TITLE_KEYS = ("title", "name", "eventName", "event_name", "headline")
DATE_KEYS = (
    "startDate", "start_date", "startsAt", "starts_at", "startTime", "start_time", "eventDate",
    "event_date", "dateTime", "datetime", "date", "start", "beginDate", "begin",
)
LOCATION_KEYS = ("location", "venue", "venueName", "locationName", "place", "address", "city")
DESCRIPTION_KEYS = ("description", "summary", "excerpt", "intro", "teaser", "subtitle")
URL_KEYS = ("url", "link", "href", "permalink", "detailUrl", "eventUrl")
IMAGE_KEYS = ("image", "imageUrl", "image_url", "thumbnail", "picture", "photo", "cover", "heroImage")
CATEGORY_KEYS = ("category", "genre", "type", "eventType")
# user accounts and navigation entries carry titles and dates too
NON_EVENT_KEYS = frozenset({"username", "email", "menuitem", "navigation"})


def _first_key(obj: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = obj.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def text_of(value: Any) -> Optional[str]:
    """Flatten strings, `{name|title|url|...}` objects and lists to a single string."""
    if value is None:
        return None
    if isinstance(value, str):
        value = " ".join(value.split())
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list):
        for item in value:
            text = text_of(item)
            if text:
                return text
        return None
    if isinstance(value, dict):
        for key in ("name", "title", "label", "url", "src", "value", "text"):
            text = text_of(value.get(key))
            if text:
                return text
    return None


def location_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        name = text_of(value.get("name") or value.get("title"))
        address = value.get("address")
        if isinstance(address, dict):
            parts = [text_of(address.get(k)) for k in ("streetAddress", "addressLocality", "city")]
            address_text = ", ".join(p for p in parts if p)
        else:
            address_text = text_of(address) or text_of(value.get("city"))
        joined = ", ".join(p for p in (name, address_text) if p)
        return joined or None
    return text_of(value)


def date_text_of(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    return text_of(value)


def is_event_like(obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    title = obj.get(next((k for k in TITLE_KEYS if k in obj), ""), None)
    if not isinstance(title, str) or not title.strip():
        return False
    if any(str(key).lower() in NON_EVENT_KEYS for key in obj):
        return False
    return _first_key(obj, DATE_KEYS) is not None


def find_events_in_object(obj: Any, depth: int = 0, found: Optional[list[dict[str, Any]]] = None) -> list[dict[str, Any]]:
    """Depth-limited walk collecting event-like dicts (not descending into them)."""
    if found is None:
        found = []
    if depth > MAX_DEPTH or len(found) >= MAX_EVENTS:
        return found
    if isinstance(obj, dict):
        if is_event_like(obj):
            found.append(obj)
            return found
        for value in obj.values():
            find_events_in_object(value, depth + 1, found)
    elif isinstance(obj, list):
        for item in obj:
            find_events_in_object(item, depth + 1, found)
    return found


def candidate_from_mapping(obj: dict[str, Any], base_url: str) -> Optional[EventCandidate]:
    title = text_of(_first_key(obj, TITLE_KEYS))
    if not title or len(title) < 3:
        return None
    date_text = date_text_of(_first_key(obj, DATE_KEYS)) or ""
    detail = text_of(_first_key(obj, URL_KEYS))
    image = text_of(_first_key(obj, IMAGE_KEYS))
    return EventCandidate(
        title=title,
        date=date_text,
        iso_date=parse_to_iso_date(date_text),
        start_time=parse_time(date_text) if "T" in date_text or ":" in date_text else None,
        location=location_of(_first_key(obj, LOCATION_KEYS)),
        description=text_of(_first_key(obj, DESCRIPTION_KEYS)),
        detail_url=urljoin(base_url, detail) if detail else None,
        image_url=urljoin(base_url, image) if image else None,
        category=text_of(_first_key(obj, CATEGORY_KEYS)),
        raw_content=json.dumps(obj, ensure_ascii=False, default=str)[:20_000],
    )


def _payloads(page: Page) -> list[tuple[str, Any]]:
    payloads: list[tuple[str, Any]] = []
    errors = 0
    for script_id in SCRIPT_ID_PAYLOADS:
        tag = page.soup.find("script", id=script_id)
        if tag is not None and tag.string:
            data = loads_lenient(tag.string)
            if data is None:
                errors += 1
            else:
                payloads.append((script_id, data))

    for tag in page.soup.find_all("script"):
        if tag.get("src") or not tag.string:
            continue
        body = tag.string
        for match in _GLOBAL_ASSIGN_RE.finditer(body):
            literal = slice_balanced(body, match.end())
            data = loads_lenient(literal) if literal else None
            if data is None:
                errors += 1
                continue
            payloads.append((match.group(1), data))
    if errors:
        payloads.append(("__errors__", errors))
    return payloads


def extract_hydration(page: Page, context: ExtractionContext) -> StrategyResult:
    if not page.looks_like_markup:
        return StrategyResult(metadata={"reason": "not_html"})

    payloads = _payloads(page)
    errors = sum(count for name, count in payloads if name == "__errors__")
    payloads = [(name, data) for name, data in payloads if name != "__errors__"]
    metadata: dict[str, Any] = {"payloads": [name for name, _ in payloads]}
    if errors:
        metadata["parse_errors"] = errors
    if not payloads:
        metadata["reason"] = "no_state_payload"
        return StrategyResult(metadata=metadata)

    events: list[EventCandidate] = []
    seen: set[tuple[str, str]] = set()
    for _, data in payloads:
        for obj in find_events_in_object(data):
            candidate = candidate_from_mapping(obj, context.url)
            if candidate is None or not candidate.date:
                continue
            key = (candidate.title.lower(), candidate.date)
            if key in seen:
                continue
            seen.add(key)
            events.append(candidate)

    if not events:
        metadata["reason"] = "no_event_like_objects"
    return StrategyResult(events=events, metadata=metadata)
