"""Review and training routes.

Routes:
- GET  /train/{session_id}/samples            - Paginated, filterable samples
- GET  /train/{session_id}/samples/next       - Oldest pending sample
- GET  /train/{session_id}/samples/uncertain  - Least confident pending samples
- GET  /train/{session_id}/stats              - Feedback statistics
- GET  /train/{session_id}/exceptions         - Exceptions raised for the session
- POST /train/{session_id}/top-up             - Add training budget
- POST /train/{session_id}/reconcile          - Recompute counters from rows
- POST /train/samples/{sample_id}/feedback    - Review a sample
- POST /train/samples/{sample_id}/skip        - Skip a sample
- POST /train/exceptions/{exception_id}/resolve
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from mailmine.engine import DiscoveryEngine
from mailmine.models import (
    DiscoverySession,
    ExceptionStatus,
    FeedbackStats,
    FeedbackSubmission,
    ReviewException,
    Sample,
    SampleFilters,
    SamplePage,
    SampleStatus,
    SampleType,
    SessionStatusReport,
    SourceType,
)
from mailmine.web.dependencies import get_discovery_engine
from mailmine.web.models import ResolveExceptionRequest, TopUpRequest

router = APIRouter(prefix="/train", tags=["training"])


@router.get("/{session_id}/samples", response_model=SamplePage)
async def list_samples(
    session_id: str,
    status_filter: SampleStatus | None = Query(default=None, alias="status"),
    type_filter: SampleType | None = Query(default=None, alias="type"),
    source_type: SourceType | None = Query(default=None),
    max_confidence: int | None = Query(default=None, ge=0, le=100),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    filters = SampleFilters(
        status=status_filter,
        type=type_filter,
        source_type=source_type,
        max_confidence=max_confidence,
        limit=limit,
        offset=offset,
    )
    return await engine.list_samples(session_id, filters)


@router.get("/{session_id}/samples/next", response_model=Sample | None)
async def next_sample(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    sample = await engine.next_sample(session_id)
    if sample is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return sample


@router.get("/{session_id}/samples/uncertain", response_model=list[Sample])
async def uncertain_samples(
    session_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    max_confidence: int | None = Query(default=None, ge=0, le=100),
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.uncertain_samples(session_id, limit, max_confidence)


@router.get("/{session_id}/stats", response_model=FeedbackStats)
async def feedback_stats(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    report = await engine.status(session_id)
    return report.feedback_stats


@router.get("/{session_id}/exceptions", response_model=list[ReviewException])
async def list_exceptions(
    session_id: str,
    status_filter: ExceptionStatus | None = Query(default=None, alias="status"),
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.list_exceptions(session_id, status_filter)


@router.post("/{session_id}/top-up", response_model=SessionStatusReport)
async def top_up_training(
    session_id: str,
    body: TopUpRequest,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.top_up_training(session_id, body.amount)


@router.post("/{session_id}/reconcile", response_model=DiscoverySession)
async def reconcile(
    session_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    return await engine.reconcile_counters(session_id)


@router.post("/samples/{sample_id}/feedback", response_model=Sample)
async def submit_feedback(
    sample_id: str,
    body: FeedbackSubmission,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.submit_feedback(sample_id, body)


@router.post("/samples/{sample_id}/skip", response_model=Sample)
async def skip_sample(
    sample_id: str, engine: DiscoveryEngine = Depends(get_discovery_engine)
):
    return await engine.skip(sample_id)


@router.post("/exceptions/{exception_id}/resolve", response_model=ReviewException)
async def resolve_exception(
    exception_id: str,
    body: ResolveExceptionRequest,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
):
    return await engine.resolve_exception(exception_id, body.status)
