"""Runtime settings for the crawl pipeline.

All tunables are read from `LCL_*` environment variables once per process.
Defaults match the operating envelope the pipeline was designed around:
quarantine after 5 consecutive failed jobs, 3 attempts per job, a 60 minute
stall timeout and a 200 ms .. 30 s per-source politeness window.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Mapping, Optional

from app.core.env import load_env_if_present


ENV_PREFIX = "LCL_"


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _str(env: Mapping[str, str], key: str) -> Optional[str]:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


@dataclass(frozen=True)
class PipelineSettings:
    # Source registry
    quarantine_threshold: int = 5
    rate_limit_floor_ms: int = 200
    rate_limit_max_ms: int = 30_000
    strategy_promotion_window: int = 3
    tier_interval_hours: tuple[int, int, int] = (6, 12, 24)

    # Job scheduler
    job_max_attempts: int = 3
    stall_timeout_minutes: int = 60
    retry_base_minutes: int = 5
    retry_max_minutes: int = 360
    scrape_concurrency: int = 5

    # Fetch gate
    fetch_timeout_seconds: float = 20.0
    proxy_urls: tuple[str, ...] = ()
    max_feed_follow: int = 3

    # Pipeline / enrichment
    enrichment_retry_limit: int = 3
    enrichment_timeout_seconds: float = 45.0
    enrichment_concurrency: int = 3
    enrichment_retry_base_seconds: int = 30
    enrichment_url: Optional[str] = None
    enrichment_api_key: Optional[str] = field(default=None, repr=False)

    # Self-healing
    review_zero_yield_runs: int = 3
    review_window_days: int = 7
    proxy_upgrade_blocks: int = 3

    sources_yaml: Optional[str] = None

    def interval_hours_for_tier(self, tier: int) -> int:
        index = min(max(int(tier or 3), 1), len(self.tier_interval_hours)) - 1
        return self.tier_interval_hours[index]

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineSettings":
        if env is None:
            load_env_if_present()
            env = os.environ
        proxies_raw = _str(env, "PROXY_URLS") or ""
        return cls(
            quarantine_threshold=_int(env, "QUARANTINE_THRESHOLD", cls.quarantine_threshold),
            rate_limit_floor_ms=_int(env, "RATE_LIMIT_FLOOR_MS", cls.rate_limit_floor_ms),
            rate_limit_max_ms=_int(env, "RATE_LIMIT_MAX_MS", cls.rate_limit_max_ms),
            strategy_promotion_window=_int(env, "STRATEGY_PROMOTION_WINDOW", cls.strategy_promotion_window),
            job_max_attempts=_int(env, "JOB_MAX_ATTEMPTS", cls.job_max_attempts),
            stall_timeout_minutes=_int(env, "STALL_TIMEOUT_MINUTES", cls.stall_timeout_minutes),
            retry_base_minutes=_int(env, "RETRY_BASE_MINUTES", cls.retry_base_minutes),
            retry_max_minutes=_int(env, "RETRY_MAX_MINUTES", cls.retry_max_minutes),
            scrape_concurrency=_int(env, "SCRAPE_CONCURRENCY", cls.scrape_concurrency),
            fetch_timeout_seconds=_float(env, "FETCH_TIMEOUT_SECONDS", cls.fetch_timeout_seconds),
            proxy_urls=tuple(p.strip() for p in proxies_raw.split(",") if p.strip()),
            max_feed_follow=_int(env, "MAX_FEED_FOLLOW", cls.max_feed_follow),
            enrichment_retry_limit=_int(env, "ENRICHMENT_RETRY_LIMIT", cls.enrichment_retry_limit),
            enrichment_timeout_seconds=_float(env, "ENRICHMENT_TIMEOUT_SECONDS", cls.enrichment_timeout_seconds),
            enrichment_concurrency=_int(env, "ENRICHMENT_CONCURRENCY", cls.enrichment_concurrency),
            enrichment_retry_base_seconds=_int(
                env, "ENRICHMENT_RETRY_BASE_SECONDS", cls.enrichment_retry_base_seconds
            ),
            enrichment_url=_str(env, "ENRICHMENT_URL"),
            enrichment_api_key=_str(env, "ENRICHMENT_API_KEY"),
            review_zero_yield_runs=_int(env, "REVIEW_ZERO_YIELD_RUNS", cls.review_zero_yield_runs),
            review_window_days=_int(env, "REVIEW_WINDOW_DAYS", cls.review_window_days),
            proxy_upgrade_blocks=_int(env, "PROXY_UPGRADE_BLOCKS", cls.proxy_upgrade_blocks),
            sources_yaml=_str(env, "SOURCES_YAML"),
        )


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    return PipelineSettings.from_env()
