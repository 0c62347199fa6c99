"""Baseline schema for the event crawl pipeline."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision = "0001_event_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    scrape_job_status = postgresql.ENUM(
        "pending",
        "processing",
        "completed",
        "failed",
        name="scrape_job_status",
        create_type=False,
    )
    pipeline_status = postgresql.ENUM(
        "discovered",
        "awaiting_enrichment",
        "enriching",
        "enriched",
        "ready_to_index",
        "indexing",
        "processed",
        "failed",
        name="pipeline_status",
        create_type=False,
    )
    scraper_failure_type = postgresql.ENUM(
        "no_events_found",
        "selector_failed",
        "parse_error",
        "fetch_error",
        "rate_limited",
        name="scraper_failure_type",
        create_type=False,
    )

    bind = op.get_bind()
    for enum_type in (scrape_job_status, pipeline_status, scraper_failure_type):
        enum_type.create(bind, checkfirst=True)

    # -------------------------------------------------------------------------
    # 1. sources
    # -------------------------------------------------------------------------
    op.create_table(
        "sources",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("url", sa.Text(), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("quarantined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quarantine_reason", sa.Text(), nullable=True),
        sa.Column("tier", sa.SmallInteger(), nullable=False, server_default=sa.text("3")),
        sa.Column("health_score", sa.Integer(), nullable=False, server_default=sa.text("70")),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consecutive_successes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_scrapes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_events_scraped", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("rate_limit_ms", sa.Integer(), nullable=False, server_default=sa.text("200")),
        sa.Column("rate_limit_escalations", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("rate_limit_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("preferred_method", sa.String(length=16), nullable=False, server_default="auto"),
        sa.Column("fetcher_type", sa.String(length=16), nullable=False, server_default="static"),
        sa.Column("detected_cms", sa.String(length=32), nullable=True),
        sa.Column("dom_selectors", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("next_scrape_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_scraped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("flagged_for_review_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "quarantined_at IS NULL OR enabled = false",
            name="ck_sources_quarantine_implies_disabled",
        ),
        sa.CheckConstraint(
            "health_score >= 0 AND health_score <= 100",
            name="ck_sources_health_score_range",
        ),
        sa.CheckConstraint("tier >= 1 AND tier <= 3", name="ck_sources_tier_range"),
    )
    op.create_index("ix_sources_due", "sources", ["enabled", "next_scrape_at"], unique=False)
    op.create_index("ix_sources_tier_health", "sources", ["tier", "health_score"], unique=False)

    # -------------------------------------------------------------------------
    # 2. scrape_jobs
    # -------------------------------------------------------------------------
    op.create_table(
        "scrape_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "source_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sources.id", name="fk_scrape_jobs_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", scrape_job_status, nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("worker_id", sa.String(length=128), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("events_scraped", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("events_inserted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("events_deduplicated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("strategy", sa.String(length=16), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("error_type", sa.String(length=32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="ck_scrape_jobs_attempts_ceiling",
        ),
    )
    op.create_index("ix_scrape_jobs_source_id", "scrape_jobs", ["source_id"], unique=False)
    op.create_index(
        "ix_scrape_jobs_claim_order",
        "scrape_jobs",
        ["status", "priority", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_scrape_jobs_processing_started",
        "scrape_jobs",
        ["status", "started_at"],
        unique=False,
    )

    # -------------------------------------------------------------------------
    # 3. staging_events
    # -------------------------------------------------------------------------
    op.create_table(
        "staging_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "source_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sources.id", name="fk_staging_events_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("scrape_jobs.id", name="fk_staging_events_job_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("pipeline_status", pipeline_status, nullable=False, server_default="discovered"),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("event_date", sa.String(length=64), nullable=True),
        sa.Column("raw_content", sa.Text(), nullable=True),
        sa.Column("extracted_fields", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("parsing_method", sa.String(length=16), nullable=True),
        sa.Column("parsing_confidence", sa.Float(), nullable=True),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("event_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("structured_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("enrichment_confidence", sa.Float(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(length=128), nullable=True),
        sa.Column("leased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("published_event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source_id", "event_fingerprint", name="uq_staging_events_source_fingerprint"),
    )
    op.create_index("ix_staging_events_source_id", "staging_events", ["source_id"], unique=False)
    op.create_index(
        "ix_staging_events_status_created",
        "staging_events",
        ["pipeline_status", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_staging_events_content_hash_active",
        "staging_events",
        ["content_hash"],
        unique=True,
        postgresql_where=sa.text("pipeline_status <> 'failed'"),
    )

    # Terminal staging rows are immutable at the database level as well.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION staging_events_reject_terminal_update()
        RETURNS trigger AS $$
        BEGIN
            IF OLD.pipeline_status IN ('processed', 'failed') THEN
                RAISE EXCEPTION 'staging event % is terminal (%)', OLD.id, OLD.pipeline_status;
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_staging_events_terminal_immutable
        BEFORE UPDATE ON staging_events
        FOR EACH ROW EXECUTE FUNCTION staging_events_reject_terminal_update();
        """
    )

    # -------------------------------------------------------------------------
    # 4. scraper_failures
    # -------------------------------------------------------------------------
    op.create_table(
        "scraper_failures",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "source_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sources.id", name="fk_scraper_failures_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("error_type", scraper_failure_type, nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("events_expected", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("events_found", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("strategy_trace", sa.String(length=128), nullable=True),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_scraper_failures_source_id", "scraper_failures", ["source_id"], unique=False)
    op.create_index(
        "ix_scraper_failures_source_created",
        "scraper_failures",
        ["source_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_scraper_failures_unhandled",
        "scraper_failures",
        ["error_type", "handled_at"],
        unique=False,
    )

    # -------------------------------------------------------------------------
    # 5. events (published)
    # -------------------------------------------------------------------------
    op.create_table(
        "events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "source_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sources.id", name="fk_events_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("content_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("event_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("event_date", sa.String(length=10), nullable=False),
        sa.Column("start_time", sa.String(length=5), nullable=True),
        sa.Column("venue_name", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("ticket_url", sa.Text(), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("attributes", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("source_id", "event_fingerprint", name="uq_events_source_fingerprint"),
    )
    op.create_index("ix_events_source_id", "events", ["source_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_events_source_id", table_name="events")
    op.drop_table("events")

    op.drop_index("ix_scraper_failures_unhandled", table_name="scraper_failures")
    op.drop_index("ix_scraper_failures_source_created", table_name="scraper_failures")
    op.drop_index("ix_scraper_failures_source_id", table_name="scraper_failures")
    op.drop_table("scraper_failures")

    op.execute("DROP TRIGGER IF EXISTS trg_staging_events_terminal_immutable ON staging_events")
    op.execute("DROP FUNCTION IF EXISTS staging_events_reject_terminal_update()")
    op.drop_index("uq_staging_events_content_hash_active", table_name="staging_events")
    op.drop_index("ix_staging_events_status_created", table_name="staging_events")
    op.drop_index("ix_staging_events_source_id", table_name="staging_events")
    op.drop_table("staging_events")

    op.drop_index("ix_scrape_jobs_processing_started", table_name="scrape_jobs")
    op.drop_index("ix_scrape_jobs_claim_order", table_name="scrape_jobs")
    op.drop_index("ix_scrape_jobs_source_id", table_name="scrape_jobs")
    op.drop_table("scrape_jobs")

    op.drop_index("ix_sources_tier_health", table_name="sources")
    op.drop_index("ix_sources_due", table_name="sources")
    op.drop_table("sources")

    bind = op.get_bind()
    for name in ("scraper_failure_type", "pipeline_status", "scrape_job_status"):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
