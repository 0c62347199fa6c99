"""
Extraction waterfall.

`extract(content, context)` runs the strategies in a fixed order (hydration,
JSON-LD, feed, DOM) and stops at the first one that yields events. When the
source has a learned preferred strategy it is tried first; if it fails the
whole order runs again from the top, skipping only the strategy that just
failed.

Extraction is pure: no network, no database. A strategy that raises is
recorded in the trace and treated as a failed attempt, never propagated.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ingestion.extraction.cms import UNKNOWN_CMS, detect_cms
from ingestion.extraction.dom import extract_dom
from ingestion.extraction.feeds import extract_feed
from ingestion.extraction.hydration import extract_hydration
from ingestion.extraction.json_ld import extract_json_ld
from ingestion.extraction.types import (
    EventCandidate,
    ExtractionContext,
    ExtractionResult,
    Page,
    Strategy,
    StrategyResult,
)

logger = logging.getLogger("lcl.ingestion.extraction")

StrategyFn = Callable[[Page, ExtractionContext], StrategyResult]

STRATEGY_ORDER: tuple[tuple[Strategy, StrategyFn], ...] = (
    (Strategy.HYDRATION, extract_hydration),
    (Strategy.JSON_LD, extract_json_ld),
    (Strategy.FEED, extract_feed),
    (Strategy.DOM, extract_dom),
)

BASE_CONFIDENCE = {
    Strategy.HYDRATION: 1.0,
    Strategy.JSON_LD: 0.9,
    Strategy.FEED: 0.8,
    Strategy.DOM: 0.6,
}


def coerce_strategy(value: Optional[str]) -> Optional[Strategy]:
    """Map a stored preferred method to a Strategy; `auto`, empty or unknown values give None."""
    if not value:
        return None
    try:
        return Strategy(str(value).lower())
    except ValueError:
        return None


def confidence_for(strategy: Strategy, events: list[EventCandidate]) -> float:
    if not events:
        return 0.0
    dated = sum(1 for e in events if e.iso_date) / len(events)
    return round(BASE_CONFIDENCE[strategy] * (0.7 + 0.3 * dated), 3)


def _run(strategy: Strategy, fn: StrategyFn, page: Page, context: ExtractionContext) -> tuple[StrategyResult, dict[str, Any]]:
    try:
        result = fn(page, context)
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Strategy {strategy.value} raised on {context.url}: {type(exc).__name__}: {exc}")
        entry = {"strategy": strategy.value, "success": False, "events": 0, "error": f"{type(exc).__name__}: {exc}"}
        return StrategyResult(metadata={"error": entry["error"]}), entry

    entry: dict[str, Any] = {"strategy": strategy.value, "success": result.success, "events": len(result.events)}
    for key in ("reason", "parse_errors"):
        if key in result.metadata:
            entry[key] = result.metadata[key]
    return result, entry


def extract(content: str, context: ExtractionContext) -> ExtractionResult:
    page = Page(content)
    detected_cms = context.detected_cms if context.detected_cms not in (None, "", UNKNOWN_CMS) else None
    if detected_cms is None and page.looks_like_markup:
        detected_cms = detect_cms(page.text)
        if detected_cms != UNKNOWN_CMS:
            context = ExtractionContext(
                url=context.url,
                detected_cms=detected_cms,
                preferred_method=context.preferred_method,
                dom_selectors=context.dom_selectors,
            )

    preferred = coerce_strategy(context.preferred_method)
    plan: list[tuple[Strategy, StrategyFn]] = []
    if preferred is not None:
        plan.extend(item for item in STRATEGY_ORDER if item[0] is preferred)
    plan.extend(item for item in STRATEGY_ORDER if item[0] is not preferred)

    trace: list[dict[str, Any]] = []
    discovered_feeds: list[str] = []
    parse_errors = 0
    for strategy, fn in plan:
        result, entry = _run(strategy, fn, page, context)
        trace.append(entry)
        parse_errors += int(result.metadata.get("parse_errors", 0) or 0)
        if "error" in result.metadata:
            parse_errors += 1
        for feed_url in result.metadata.get("discovered_feeds", []):
            if feed_url not in discovered_feeds:
                discovered_feeds.append(feed_url)

        if result.success:
            metadata = {
                **result.metadata,
                "trace": trace,
                "detected_cms": detected_cms or UNKNOWN_CMS,
                "discovered_feeds": discovered_feeds,
                "preferred_method": preferred.value if preferred else None,
                "used_fast_path": preferred is strategy,
            }
            return ExtractionResult(
                success=True,
                events=tuple(result.events),
                strategy=strategy,
                confidence=confidence_for(strategy, result.events),
                metadata=metadata,
            )

    return ExtractionResult(
        success=False,
        events=(),
        strategy=None,
        confidence=0.0,
        metadata={
            "trace": trace,
            "detected_cms": detected_cms or UNKNOWN_CMS,
            "discovered_feeds": discovered_feeds,
            "preferred_method": preferred.value if preferred else None,
            "parse_errors": parse_errors,
        },
    )
