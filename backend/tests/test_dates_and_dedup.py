from __future__ import annotations

from datetime import date

import pytest

from ingestion.core.dedup import compute_content_hash, compute_event_fingerprint, normalize_title
from ingestion.extraction.dates import parse_time, parse_to_iso_date


REFERENCE = date(2026, 3, 1)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("2026-03-14T20:00:00Z", "2026-03-14"),
        ("20260314T200000Z", "2026-03-14"),
        ("14-03-2026", "2026-03-14"),
        ("14/03/26", "2026-03-14"),
        ("za 14 mrt", "2026-03-14"),
        ("1 mei 2026", "2026-05-01"),
        ("March 14th, 2026", "2026-03-14"),
        ("14. März 2026", "2026-03-14"),
        ("Sat, 14 Nov 2026 18:00:00 +0000", "2026-11-14"),
        ("morgen", "2026-03-02"),
        ("Overmorgen 20:00", "2026-03-03"),
        ("14 februari", "2026-02-14"),
        # well past the reference date without a year: next year's edition
        ("5 januari", "2027-01-05"),
    ],
)
def test_parse_to_iso_date(text, expected):
    assert parse_to_iso_date(text, REFERENCE) == expected


@pytest.mark.parametrize("text", [None, "", "   ", "binnenkort", "elke week"])
def test_parse_to_iso_date_gives_none_when_unsure(text):
    assert parse_to_iso_date(text, REFERENCE) is None


@pytest.mark.parametrize(
    "text,expected",
    [
        ("20.00", "20:00"),
        ("Aanvang 9:30 uur", "09:30"),
        ("2026-03-14T19:45:00", "19:45"),
        ("2026.03.14", None),
        (None, None),
    ],
)
def test_parse_time(text, expected):
    assert parse_time(text) == expected


def test_normalize_title():
    assert normalize_title("  JAZZ in het Park! ") == "jazz in het park"
    assert normalize_title("Ｋermis — Zwolle") == "kermis zwolle"
    assert normalize_title(None) == ""


def test_content_hash_is_cross_source_and_date_sensitive():
    a = compute_content_hash(title="Jazz in het Park", iso_date="2026-06-12")
    b = compute_content_hash(title="JAZZ  in het park!!", iso_date="2026-06-12")
    c = compute_content_hash(title="Jazz in het Park", iso_date="2026-06-13")

    assert a == b
    assert a != c
    assert len(a) == 64


def test_content_hash_falls_back_to_raw_date():
    assert compute_content_hash(title="Open dag", iso_date=None, raw_date="Elke  Zaterdag") == compute_content_hash(
        title="open dag", iso_date=None, raw_date="elke zaterdag"
    )


def test_fingerprint_is_per_source():
    first = compute_event_fingerprint(title="Open dag", iso_date="2026-04-04", source_id="a")
    again = compute_event_fingerprint(title="Open dag", iso_date="2026-04-04", source_id="a")
    other = compute_event_fingerprint(title="Open dag", iso_date="2026-04-04", source_id="b")

    assert first == again
    assert first != other
