"""Schemas for administrative endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.scrape_job import JobStatus


class SourceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    url: str
    enabled: bool
    tier: int = Field(ge=1, le=3)
    health_score: int = Field(ge=0, le=100)
    consecutive_failures: int
    consecutive_successes: int
    rate_limit_ms: int
    preferred_method: str
    fetcher_type: str
    detected_cms: Optional[str] = None
    quarantined_at: Optional[datetime] = None
    quarantine_reason: Optional[str] = None
    flagged_for_review_at: Optional[datetime] = None
    review_reason: Optional[str] = None
    next_scrape_at: Optional[datetime] = None
    last_scraped_at: Optional[datetime] = None
    last_error: Optional[str] = None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    source_id: uuid.UUID
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class PipelineSummaryResponse(BaseModel):
    counts: dict[str, int]
    total: int
