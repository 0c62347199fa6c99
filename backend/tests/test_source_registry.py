from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from app.core.clock import as_utc, utcnow
from app.core.settings import PipelineSettings
from app.models.failure_log import FailureLogEntry, FailureType
from app.models.source import Source
from ingestion.core.health import HealthMonitor
from ingestion.core.source_registry import (
    ScrapeOutcome,
    SourceRegistry,
    SourceSeed,
    assign_tier,
    extract_city_from_domain,
    load_sources_yaml,
)


SOURCES_YAML = Path(__file__).resolve().parents[1] / "ingestion" / "config" / "sources.yaml"


def test_health_monitor_scoring_is_clamped():
    monitor = HealthMonitor()
    assert monitor.score_after_success(98) == 100
    assert monitor.score_after_failure(10) == 0
    assert monitor.score_after_failure(70) == 55


def test_health_monitor_rate_limit_bounds():
    monitor = HealthMonitor(rate_limit_floor_ms=200, rate_limit_max_ms=1000)
    assert monitor.escalated_rate_limit(200) == 400
    assert monitor.escalated_rate_limit(800) == 1000
    assert monitor.escalated_rate_limit(0) == 400
    # decay needs a streak and never drops below the floor
    assert monitor.decayed_rate_limit(800, 2) == 800
    assert monitor.decayed_rate_limit(800, 3) == 600
    assert monitor.decayed_rate_limit(220, 5) == 200


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://www.visitamsterdam.nl/agenda", "amsterdam"),
        ("https://www.uitutrecht.nl/agenda", "utrecht"),
        ("https://agenda.zwolle.nl/", "zwolle"),
        ("https://www.dorpshuisdelinde.nl/activiteiten", "dorpshuisdelinde"),
        ("not a url", None),
    ],
)
def test_extract_city_from_domain(url, expected):
    assert extract_city_from_domain(url) == expected


def test_assign_tier():
    assert assign_tier("https://www.visitamsterdam.nl/agenda") == 1
    assert assign_tier("https://www.beleefzwolle.nl/evenementen", population=132_000) == 2
    assert assign_tier("https://www.dorpshuisdelinde.nl/activiteiten", population=4_200) == 3
    assert assign_tier("https://example.nl", city="Den Haag") == 1


def test_record_outcome_success_updates_counters_and_cadence(db_session, make_source, settings):
    source = make_source(db_session, tier=1, consecutive_failures=2)
    registry = SourceRegistry(db_session, settings)

    before = utcnow()
    registry.record_outcome(source.id, ScrapeOutcome(success=True, events_found=12, strategy="json_ld"))

    assert source.health_score == 75
    assert source.consecutive_failures == 0
    assert source.consecutive_successes == 1
    assert source.total_events_scraped == 12
    assert as_utc(source.next_scrape_at) >= before + timedelta(hours=6)


def test_record_outcome_failure_quarantines_at_threshold(db_session, make_source, settings):
    source = make_source(db_session, consecutive_failures=4, health_score=70)
    registry = SourceRegistry(db_session, settings)

    registry.record_outcome(source.id, ScrapeOutcome(success=False, error_type="fetch_error", message="HTTP 500"))

    assert source.health_score == 55
    assert source.consecutive_failures == 5
    assert source.enabled is False
    assert source.quarantined_at is not None
    assert "5 consecutive failures" in source.quarantine_reason
    assert source.last_error == "HTTP 500"


def test_rate_limit_decays_after_success_streak(db_session, make_source, settings):
    source = make_source(db_session, rate_limit_ms=1600)
    registry = SourceRegistry(db_session, settings)

    for _ in range(2):
        registry.record_outcome(source.id, ScrapeOutcome(success=True, events_found=1))
    assert source.rate_limit_ms == 1600

    registry.record_outcome(source.id, ScrapeOutcome(success=True, events_found=1))
    assert source.rate_limit_ms == 1200


def test_escalate_rate_limit_only_for_blocking_responses(db_session, make_source):
    source = make_source(db_session, rate_limit_ms=200)
    registry = SourceRegistry(db_session, PipelineSettings(rate_limit_max_ms=500))

    assert registry.escalate_rate_limit(source.id, 500) is None
    assert source.rate_limit_ms == 200

    assert registry.escalate_rate_limit(source.id, 403) == 400
    assert registry.escalate_rate_limit(source.id, None, blocked=True) == 500
    assert registry.escalate_rate_limit(source.id, 429) == 500
    assert source.rate_limit_escalations == 3


@pytest.mark.parametrize("status_code", [401, 403, 429])
def test_registry_and_failure_log_agree_on_blocking_codes(db_session, make_source, status_code):
    source = make_source(db_session, rate_limit_ms=200)
    entry = FailureLogEntry(source_id=source.id, error_type=FailureType.FETCH_ERROR, status_code=status_code, blocked=False)

    assert entry.is_blocking is True
    assert SourceRegistry(db_session, PipelineSettings()).escalate_rate_limit(source.id, status_code) == 400


def test_get_due_sources_filters_and_orders(db_session, make_source, settings):
    now = utcnow()
    tier3 = make_source(db_session, tier=3, health_score=90)
    tier1_low = make_source(db_session, tier=1, health_score=40)
    tier1_high = make_source(db_session, tier=1, health_score=80)
    make_source(db_session, tier=1, enabled=False)
    make_source(db_session, tier=1, enabled=False, quarantined_at=now)
    make_source(db_session, tier=1, next_scrape_at=now + timedelta(hours=1))

    due = SourceRegistry(db_session, settings).get_due_sources(limit=10)

    assert [s.id for s in due] == [tier1_high.id, tier1_low.id, tier3.id]


def test_promote_strategy_requires_a_stable_window(db_session, make_source, settings):
    from app.models.scrape_job import JobStatus, ScrapeJob

    source = make_source(db_session)
    registry = SourceRegistry(db_session, settings)

    def _completed(strategy: str) -> None:
        db_session.add(
            ScrapeJob(
                source_id=source.id,
                status=JobStatus.COMPLETED,
                completed_at=utcnow(),
                events_scraped=4,
                strategy=strategy,
            )
        )

    _completed("dom")
    _completed("json_ld")
    _completed("json_ld")
    assert registry.promote_strategy_if_stable(source.id) is None

    _completed("json_ld")
    assert registry.promote_strategy_if_stable(source.id) == "json_ld"
    assert source.preferred_method == "json_ld"
    # already pinned
    assert registry.promote_strategy_if_stable(source.id) is None


def test_operator_enable_clears_quarantine(db_session, make_source, settings):
    source = make_source(db_session, consecutive_failures=5)
    registry = SourceRegistry(db_session, settings)
    assert registry.quarantine(source.id, "manual") is True
    assert registry.quarantine(source.id, "manual") is False

    registry.set_enabled(source.id, True)

    assert source.enabled is True
    assert source.quarantined_at is None
    assert source.consecutive_failures == 0


def test_reset_health_restores_defaults(db_session, make_source, settings):
    source = make_source(
        db_session,
        health_score=10,
        rate_limit_ms=6400,
        enabled=False,
        quarantined_at=utcnow(),
        flagged_for_review_at=utcnow(),
        review_reason="zero yield",
    )
    registry = SourceRegistry(db_session, settings)

    registry.reset_health(source.id)

    assert source.health_score == 70
    assert source.rate_limit_ms == settings.rate_limit_floor_ms
    assert source.enabled is True
    assert source.quarantined_at is None
    assert source.flagged_for_review_at is None
    assert source.next_scrape_at is None


def test_unknown_source_raises_lookup_error(db_session, settings):
    import uuid

    with pytest.raises(LookupError):
        SourceRegistry(db_session, settings).set_enabled(uuid.uuid4(), False)


def test_load_sources_yaml_reads_shipped_config():
    seeds = {seed.key: seed for seed in load_sources_yaml(SOURCES_YAML)}

    assert seeds["paradiso"].tier == 1
    assert seeds["beleef_zwolle"].dom_selectors == (".event-list .event-list__item",)
    assert seeds["dorpshuis_example"].enabled is False


def test_load_sources_yaml_rejects_bad_shape(tmp_path):
    path = tmp_path / "sources.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_sources_yaml(path)


def test_seed_sources_upserts_without_touching_learned_fields(db_session, settings):
    registry = SourceRegistry(db_session, settings)
    seed = SourceSeed(key="zwolle", name="Beleef Zwolle", url="https://www.beleefzwolle.nl/evenementen", population=132_000)

    assert registry.seed_sources([seed]) == (1, 0)
    source = db_session.query(Source).filter_by(url=seed.url).one()
    assert source.tier == 2
    source.health_score = 35
    source.rate_limit_ms = 3200
    source.preferred_method = "dom"

    renamed = SourceSeed(key="zwolle", name="Beleef Zwolle!", url=seed.url, population=132_000)
    assert registry.seed_sources([renamed]) == (0, 1)

    assert source.name == "Beleef Zwolle!"
    assert source.health_score == 35
    assert source.rate_limit_ms == 3200
    assert source.preferred_method == "dom"
