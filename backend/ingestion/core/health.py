"""
Health scoring for crawl sources.

Principles:
- Failures have momentum: every failed job costs more than a success earns.
- Trust is earned slowly: a success adds +5, a failure removes 15.
- Politeness recovers gradually: an escalated rate limit only decays after a
  streak of successes, one step at a time, never straight back to the floor.

Pure functions over plain values; persistence lives in `source_registry`.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.core.settings import PipelineSettings

HEALTH_MIN = 0
HEALTH_MAX = 100


@dataclass(frozen=True, slots=True)
class HealthMonitor:
    """Scoring rules for a source's health score and rate limit."""

    success_reward: int = 5
    failure_penalty: int = 15
    quarantine_threshold: int = 5
    rate_limit_floor_ms: int = 200
    rate_limit_max_ms: int = 30_000
    decay_after_successes: int = 3
    decay_factor: float = 0.75

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "HealthMonitor":
        return cls(
            quarantine_threshold=settings.quarantine_threshold,
            rate_limit_floor_ms=settings.rate_limit_floor_ms,
            rate_limit_max_ms=settings.rate_limit_max_ms,
        )

    def score_after_success(self, score: int) -> int:
        return min(HEALTH_MAX, int(score) + self.success_reward)

    def score_after_failure(self, score: int) -> int:
        return max(HEALTH_MIN, int(score) - self.failure_penalty)

    def should_quarantine(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= self.quarantine_threshold

    def escalated_rate_limit(self, current_ms: int) -> int:
        """Double the per-source delay, bounded by the configured maximum."""
        base = max(int(current_ms or 0), self.rate_limit_floor_ms)
        return min(base * 2, self.rate_limit_max_ms)

    def decayed_rate_limit(self, current_ms: int, consecutive_successes: int) -> int:
        """Step the delay back toward the floor once a success streak is established."""
        current_ms = int(current_ms or self.rate_limit_floor_ms)
        if consecutive_successes < self.decay_after_successes or current_ms <= self.rate_limit_floor_ms:
            return max(current_ms, self.rate_limit_floor_ms)
        return max(self.rate_limit_floor_ms, int(current_ms * self.decay_factor))
