"""
Feed strategy: RSS/Atom via feedparser, iCalendar via a small VEVENT reader.

On HTML pages there is nothing to parse; the strategy instead reports any
advertised feeds in `metadata["discovered_feeds"]` so the scrape runner can
fetch them and re-run extraction with the feed strategy preferred.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urljoin

import feedparser

from ingestion.extraction.dates import parse_time, parse_to_iso_date
from ingestion.extraction.types import EventCandidate, ExtractionContext, Page, StrategyResult

FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml", "text/calendar", "application/calendar+xml")
_FEED_HREF_RE = re.compile(r"(\.ics(\?|$)|/feed/?$|\.rss(\?|$)|/rss/?$|\.atom(\?|$)|[?&]ical=1|webcal://)", re.I)
_TAG_RE = re.compile(r"<[^>]+>")
MAX_DISCOVERED_FEEDS = 10


def _strip_html(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = " ".join(_TAG_RE.sub(" ", text).split())
    return cleaned or None


def is_calendar(text: str) -> bool:
    return text.lstrip()[:64].upper().startswith("BEGIN:VCALENDAR")


def is_syndication_feed(text: str) -> bool:
    head = text.lstrip()[:512].lower()
    return head.startswith("<?xml") or "<rss" in head or "<feed" in head or "<rdf:rdf" in head


def discover_feed_links(page: Page, base_url: str) -> list[str]:
    """`<link rel=alternate>` feeds plus anchors that look like RSS or iCal exports, absolute and de-duplicated."""
    found: list[str] = []

    def _add(href: Optional[str]) -> None:
        if not href:
            return
        href = href.strip()
        if href.lower().startswith("webcal://"):
            href = "https://" + href[len("webcal://"):]
        absolute = urljoin(base_url, href)
        if absolute not in found and absolute.startswith(("http://", "https://")):
            found.append(absolute)

    for link in page.soup.find_all("link", href=True):
        rel = [r.lower() for r in (link.get("rel") or [])]
        link_type = (link.get("type") or "").lower()
        if "alternate" in rel and link_type in FEED_LINK_TYPES:
            # WordPress advertises a comments feed next to the main one.
            if "comments" in link["href"].lower():
                continue
            _add(link["href"])

    for anchor in page.soup.find_all("a", href=True):
        if _FEED_HREF_RE.search(anchor["href"]):
            _add(anchor["href"])

    return found[:MAX_DISCOVERED_FEEDS]


# ---------------------------------------------------------------------------
# iCalendar
# ---------------------------------------------------------------------------

def _unfold(text: str) -> list[str]:
    lines: list[str] = []
    for raw in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw.startswith((" ", "\t")) and lines:
            lines[-1] += raw[1:]
        else:
            lines.append(raw)
    return lines


def _unescape(value: str) -> str:
    return (
        value.replace("\\n", "\n").replace("\\N", "\n").replace("\\,", ",").replace("\\;", ";").replace("\\\\", "\\")
    )


def _ics_datetime(value: str) -> tuple[str, Optional[str]]:
    """Return (date text, HH:MM or None) for `20260314`, `20260314T200000` or `20260314T200000Z`."""
    value = value.strip()
    iso_date = parse_to_iso_date(value) or ""
    start_time = None
    if "T" in value:
        clock = value.split("T", 1)[1]
        if len(clock) >= 4 and clock[:4].isdigit():
            start_time = f"{clock[:2]}:{clock[2:4]}"
    return iso_date or value, start_time


def parse_ics(text: str, base_url: str) -> list[EventCandidate]:
    events: list[EventCandidate] = []
    current: Optional[dict[str, str]] = None
    for line in _unfold(text):
        if line.upper() == "BEGIN:VEVENT":
            current = {}
            continue
        if line.upper() == "END:VEVENT":
            if current is not None:
                candidate = _candidate_from_vevent(current, base_url)
                if candidate is not None:
                    events.append(candidate)
            current = None
            continue
        if current is None or ":" not in line:
            continue
        name_part, value = line.split(":", 1)
        name = name_part.split(";", 1)[0].upper()
        current.setdefault(name, _unescape(value))
    return events


def _candidate_from_vevent(fields: dict[str, str], base_url: str) -> Optional[EventCandidate]:
    title = " ".join((fields.get("SUMMARY") or "").split())
    if len(title) < 3:
        return None
    date_text, start_time = _ics_datetime(fields.get("DTSTART", ""))
    url = fields.get("URL")
    raw = "\n".join(f"{k}:{v}" for k, v in fields.items())
    return EventCandidate(
        title=title,
        date=date_text,
        iso_date=parse_to_iso_date(date_text),
        start_time=start_time,
        location=fields.get("LOCATION") or None,
        description=fields.get("DESCRIPTION") or None,
        detail_url=urljoin(base_url, url) if url else None,
        category=(fields.get("CATEGORIES") or "").split(",")[0].strip() or None,
        raw_content=raw[:20_000],
    )


# ---------------------------------------------------------------------------
# RSS / Atom
# ---------------------------------------------------------------------------

def _entry_date(entry: Any) -> tuple[str, Optional[str]]:
    # Event feeds (ev: namespace, The Events Calendar) carry the event start; fall back to publication time.
    for key in ("ev_startdate", "startdate", "event_date"):
        value = entry.get(key)
        if value:
            return str(value), parse_time(str(value)) if "T" in str(value) else None
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            stamp = datetime(*parsed[:6], tzinfo=timezone.utc)
            return stamp.date().isoformat(), None
    return str(entry.get("published") or entry.get("updated") or ""), None


def _entry_image(entry: Any) -> Optional[str]:
    for media in entry.get("media_content") or entry.get("media_thumbnail") or []:
        if media.get("url"):
            return media["url"]
    for enclosure in entry.get("enclosures") or []:
        if str(enclosure.get("type", "")).startswith("image/") and enclosure.get("href"):
            return enclosure["href"]
    return None


def parse_syndication_feed(text: str, base_url: str) -> tuple[list[EventCandidate], bool]:
    """Return (events, malformed). `malformed` mirrors feedparser's bozo flag when nothing was read."""
    feed = feedparser.parse(text)
    events: list[EventCandidate] = []
    for entry in feed.entries or []:
        title = _strip_html(entry.get("title"))
        if not title or len(title) < 3:
            continue
        date_text, start_time = _entry_date(entry)
        link = entry.get("link")
        tags = entry.get("tags") or []
        events.append(
            EventCandidate(
                title=title,
                date=date_text,
                iso_date=parse_to_iso_date(date_text),
                start_time=start_time,
                location=_strip_html(entry.get("ev_location") or entry.get("location")),
                description=_strip_html(entry.get("summary")),
                detail_url=urljoin(base_url, link) if link else None,
                image_url=_entry_image(entry),
                category=(tags[0].get("term") if tags else None) or None,
                raw_content=(entry.get("summary") or title)[:20_000],
            )
        )
    malformed = bool(getattr(feed, "bozo", False)) and not events
    return events, malformed


def extract_feed(page: Page, context: ExtractionContext) -> StrategyResult:
    text = page.text
    if is_calendar(text):
        events = parse_ics(text, context.url)
        metadata: dict[str, Any] = {"format": "ics"}
        if not events:
            metadata["reason"] = "no_vevents"
        return StrategyResult(events=events, metadata=metadata)

    if is_syndication_feed(text):
        events, malformed = parse_syndication_feed(text, context.url)
        metadata = {"format": "rss"}
        if malformed:
            metadata["parse_errors"] = 1
        if not events:
            metadata["reason"] = "no_entries"
        return StrategyResult(events=events, metadata=metadata)

    if page.looks_like_markup:
        feeds = discover_feed_links(page, context.url)
        return StrategyResult(metadata={"format": "html", "discovered_feeds": feeds, "reason": "not_a_feed"})

    return StrategyResult(metadata={"reason": "unrecognised_content"})
