"""Administrative endpoints: source enable/disable/reset, job requeue, review and pipeline views.

These are plain CRUD over the registry, scheduler and state machine; no
authentication is applied here.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import get_db_session, get_pipeline_settings
from app.core.settings import PipelineSettings
from app.schemas.admin import JobResponse, PipelineSummaryResponse, SourceResponse
from ingestion.core.errors import InvalidTransitionError
from ingestion.core.pipeline import PipelineStateMachine
from ingestion.core.scheduler import JobScheduler
from ingestion.core.source_registry import SourceRegistry


router = APIRouter()


def _not_found(exc: LookupError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0] if exc.args else exc))


@router.get("/sources/review", response_model=list[SourceResponse])
def list_sources_for_review(
    db: Session = Depends(get_db_session),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> list[SourceResponse]:
    """Quarantined sources and sources flagged for zero yield."""
    sources = SourceRegistry(db, settings).list_for_review()
    return [SourceResponse.model_validate(s) for s in sources]


@router.post("/sources/{source_id}/enable", response_model=SourceResponse)
def enable_source(
    source_id: uuid.UUID,
    db: Session = Depends(get_db_session),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> SourceResponse:
    """Enable a source; clears quarantine and the failure streak."""
    try:
        source = SourceRegistry(db, settings).set_enabled(source_id, True)
    except LookupError as e:
        raise _not_found(e) from e
    return SourceResponse.model_validate(source)


@router.post("/sources/{source_id}/disable", response_model=SourceResponse)
def disable_source(
    source_id: uuid.UUID,
    db: Session = Depends(get_db_session),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> SourceResponse:
    try:
        source = SourceRegistry(db, settings).set_enabled(source_id, False)
    except LookupError as e:
        raise _not_found(e) from e
    return SourceResponse.model_validate(source)


@router.post("/sources/{source_id}/reset-health", response_model=SourceResponse)
def reset_source_health(
    source_id: uuid.UUID,
    db: Session = Depends(get_db_session),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> SourceResponse:
    """Back to default health and floor rate limit; enabled and due immediately."""
    try:
        source = SourceRegistry(db, settings).reset_health(source_id)
    except LookupError as e:
        raise _not_found(e) from e
    return SourceResponse.model_validate(source)


@router.post("/jobs/{job_id}/requeue", response_model=JobResponse)
def requeue_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_db_session),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> JobResponse:
    try:
        job = JobScheduler(db, settings).requeue(job_id)
    except LookupError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return JobResponse.model_validate(job)


@router.get("/pipeline/summary", response_model=PipelineSummaryResponse)
def pipeline_summary(
    db: Session = Depends(get_db_session),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> PipelineSummaryResponse:
    counts = PipelineStateMachine(db, settings).status_summary()
    return PipelineSummaryResponse(counts=counts, total=sum(counts.values()))
