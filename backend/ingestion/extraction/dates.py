"""
Event date normalisation.

Listing pages print dates in every shape imaginable: ISO stamps from
structured data, `20260314T200000Z` from calendars, `14-03-2026` and
`za 14 mrt` from Dutch agendas, `March 14th, 2026` from English ones and
RFC 2822 from feeds. `parse_to_iso_date` maps all of them to `YYYY-MM-DD`
and returns None when it cannot; it never raises.
"""

from __future__ import annotations

import email.utils
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

MONTHS = {
    # nl
    "januari": 1, "februari": 2, "maart": 3, "mrt": 3, "mei": 5, "juni": 6, "juli": 7,
    "augustus": 8, "oktober": 10, "okt": 10,
    # en
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3, "april": 4, "apr": 4,
    "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7, "august": 8, "aug": 8, "september": 9,
    "sept": 9, "sep": 9, "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
    # de
    "januar": 1, "februar": 2, "märz": 3, "maerz": 3, "mai": 5, "dezember": 12,
    # fr
    "janvier": 1, "février": 2, "fevrier": 2, "mars": 3, "avril": 4, "juin": 6, "juillet": 7,
    "août": 8, "aout": 8, "septembre": 9, "octobre": 10, "novembre": 11, "décembre": 12, "decembre": 12,
}

RELATIVE_DAYS = {
    "vandaag": 0, "today": 0, "heute": 0, "aujourd'hui": 0,
    "morgen": 1, "tomorrow": 1, "demain": 1,
    "overmorgen": 2, "übermorgen": 2,
    "gisteren": -1, "yesterday": -1, "gestern": -1,
}

_MONTH_ALT = "|".join(sorted((re.escape(m) for m in MONTHS), key=len, reverse=True))
_RELATIVE_ALT = "|".join(sorted((re.escape(w) for w in RELATIVE_DAYS), key=len, reverse=True))

ISO_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
COMPACT_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T|$)")
NUMERIC_DMY_RE = re.compile(r"(?<!\d)(\d{1,2})[-/.](\d{1,2})[-/.](\d{4}|\d{2})(?!\d)")
DAY_MONTH_RE = re.compile(
    rf"(?<!\d)(\d{{1,2}})(?:st|nd|rd|th|e|er)?\.?\s+({_MONTH_ALT})\b\.?(?:,?\s+(\d{{4}}))?",
    re.IGNORECASE,
)
MONTH_DAY_RE = re.compile(
    rf"\b({_MONTH_ALT})\b\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?(?!\d)(?:,?\s+(\d{{4}}))?",
    re.IGNORECASE,
)
RELATIVE_RE = re.compile(rf"(?<!\w)({_RELATIVE_ALT})(?!\w)", re.IGNORECASE)
TIME_RE = re.compile(r"(?<![\d.])([01]?\d|2[0-3])[:.]([0-5]\d)(?![\d.])")

# A year-less date this far in the past is taken to mean next year.
PAST_ROLLOVER_DAYS = 30


def _today() -> date:
    return datetime.now(tz=timezone.utc).date()


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _with_inferred_year(month: int, day: int, reference: date) -> Optional[date]:
    candidate = _safe_date(reference.year, month, day)
    if candidate is None:
        return None
    if candidate < reference - timedelta(days=PAST_ROLLOVER_DAYS):
        candidate = _safe_date(reference.year + 1, month, day)
    return candidate


def _year(raw: str) -> int:
    value = int(raw)
    return value + 2000 if value < 100 else value


def parse_date(text: Optional[str], reference: Optional[date] = None) -> Optional[date]:
    if not text:
        return None
    value = " ".join(str(text).split())
    if not value:
        return None
    reference = reference or _today()

    match = ISO_RE.search(value)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = COMPACT_RE.match(value)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = RELATIVE_RE.search(value)
    if match:
        return reference + timedelta(days=RELATIVE_DAYS[match.group(1).lower()])

    match = NUMERIC_DMY_RE.search(value)
    if match:
        parsed = _safe_date(_year(match.group(3)), int(match.group(2)), int(match.group(1)))
        if parsed is not None:
            return parsed

    match = DAY_MONTH_RE.search(value)
    if match:
        day, month = int(match.group(1)), MONTHS[match.group(2).lower()]
        if match.group(3):
            return _safe_date(int(match.group(3)), month, day)
        return _with_inferred_year(month, day, reference)

    match = MONTH_DAY_RE.search(value)
    if match:
        month, day = MONTHS[match.group(1).lower()], int(match.group(2))
        if match.group(3):
            return _safe_date(int(match.group(3)), month, day)
        return _with_inferred_year(month, day, reference)

    try:
        parsed_rfc = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        parsed_rfc = None
    if parsed_rfc is not None:
        return parsed_rfc.date()

    # dateutil fills missing fields from "now"; only trust it with an explicit year.
    if re.search(r"\d{4}", value):
        try:
            return date_parser.parse(value, dayfirst=True, fuzzy=True).date()
        except (ValueError, OverflowError) as exc:
            logger.debug(f"Unparseable date {value!r}: {exc}")
    return None


def parse_to_iso_date(text: Optional[str], reference: Optional[date] = None) -> Optional[str]:
    parsed = parse_date(text, reference)
    return parsed.isoformat() if parsed else None


def parse_time(text: Optional[str]) -> Optional[str]:
    """First plausible `HH:MM` in the text (accepts `20.00` as well as `20:00`)."""
    if not text:
        return None
    match = TIME_RE.search(str(text))
    if not match:
        return None
    return f"{int(match.group(1)):02d}:{match.group(2)}"
