"""CMS fingerprinting from page markup (weighted marker scoring)."""

from __future__ import annotations

import re

UNKNOWN_CMS = "unknown"

_SIGNATURES: dict[str, tuple[tuple[re.Pattern[str], int], ...]] = {
    "wordpress": (
        (re.compile(r"/wp-content/", re.I), 3),
        (re.compile(r"/wp-includes/", re.I), 3),
        (re.compile(r"tribe-events", re.I), 2),
        (re.compile(r'<meta[^>]+generator[^>]+wordpress', re.I), 4),
    ),
    "wix": (
        (re.compile(r"static\.wixstatic\.com", re.I), 4),
        (re.compile(r"_wixCIDX|wix-warmup-data", re.I), 3),
        (re.compile(r'<meta[^>]+generator[^>]+wix', re.I), 4),
    ),
    "squarespace": (
        (re.compile(r"static1\.squarespace\.com|squarespace-cdn\.com", re.I), 4),
        (re.compile(r"Static\.SQUARESPACE_CONTEXT", re.I), 3),
        (re.compile(r"eventlist-event", re.I), 1),
    ),
    "nextjs": (
        (re.compile(r'id="__NEXT_DATA__"', re.I), 4),
        (re.compile(r"/_next/static/", re.I), 3),
    ),
    "nuxt": (
        (re.compile(r"window\.__NUXT__", re.I), 4),
        (re.compile(r"/_nuxt/", re.I), 3),
    ),
    "drupal": (
        (re.compile(r"drupal-settings-json|Drupal\.settings", re.I), 4),
        (re.compile(r"/sites/default/files/", re.I), 2),
    ),
    "joomla": (
        (re.compile(r'<meta[^>]+generator[^>]+joomla', re.I), 4),
        (re.compile(r"/media/jui/|/components/com_", re.I), 2),
    ),
}

MIN_SCORE = 3


def detect_cms(html: str) -> str:
    """Best-scoring CMS name, or "unknown" when no signature reaches the minimum score."""
    if not html:
        return UNKNOWN_CMS
    best, best_score = UNKNOWN_CMS, 0
    for cms, signatures in _SIGNATURES.items():
        score = sum(weight for pattern, weight in signatures if pattern.search(html))
        if score > best_score:
            best, best_score = cms, score
    return best if best_score >= MIN_SCORE else UNKNOWN_CMS
