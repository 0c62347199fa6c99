from __future__ import annotations

"""Deduplication keys for staged and published events.

- content_hash: SHA256(normalized title | event date). Cross-source key; the
  same concert listed by two agendas collapses to one record.
- event_fingerprint: SHA256(title | event date | source id). Per-source key;
  stops one source from re-emitting an item it already produced.

Purely deterministic normalization + hashing. Hashes are safe to log; raw
content is not.
"""

import hashlib
import re
import unicodedata
from typing import Optional

_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)


def normalize_title(title: Optional[str]) -> str:
    text = unicodedata.normalize("NFKC", title or "").lower()
    text = _PUNCTUATION_RE.sub(" ", text)
    return " ".join(text.split())


def _event_date_key(iso_date: Optional[str], raw_date: Optional[str]) -> str:
    return (iso_date or " ".join((raw_date or "").split())).strip()


def compute_content_hash(*, title: Optional[str], iso_date: Optional[str], raw_date: Optional[str] = None) -> str:
    basis = f"{normalize_title(title)}|{_event_date_key(iso_date, raw_date).lower()}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


def compute_event_fingerprint(
    *,
    title: Optional[str],
    iso_date: Optional[str],
    source_id: object,
    raw_date: Optional[str] = None,
) -> str:
    basis = f"{' '.join((title or '').split())}|{_event_date_key(iso_date, raw_date)}|{source_id}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()
