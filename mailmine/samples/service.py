"""Sample store operations: record extractions, take feedback, reconcile counters."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.budget.accountant import BudgetKind, debit_session, remaining, stored_budget
from mailmine.db.models import DiscoverySessionModel, ReviewExceptionModel, ReviewSampleModel, utcnow
from mailmine.errors import AlreadyReviewed, TrainingBudgetExhausted
from mailmine.escalation.service import flag_conflict, to_exception
from mailmine.models import (
    ExtractionResult,
    FeedbackSubmission,
    ReviewException,
    Sample,
    SampleFilters,
    SamplePage,
    SampleStatus,
    SourceType,
)
from mailmine.samples.repository import (
    build_samples,
    count_reviewed,
    fetch_next_pending,
    fetch_samples,
    fetch_uncertain,
    load_sample,
    mark_reviewed,
    mark_skipped,
    next_ordinal,
    to_sample,
)
from mailmine.sessions.repository import add_to_counters, load_session, set_counters
from mailmine.training.gate import compute_accuracy

logger = logging.getLogger(__name__)


async def create_samples(
    session: AsyncSession,
    session_id: str,
    result: ExtractionResult,
    source_type: SourceType,
    day: date,
) -> list[ReviewSampleModel]:
    """Insert one pending sample per entity and relationship in ``result``.

    Increments ``samples_collected`` by the number inserted. The caller owns
    the transaction.
    """
    start = await next_ordinal(session, session_id)
    samples = build_samples(session_id, result, source_type, day, start_ordinal=start)
    if not samples:
        return []

    session.add_all(samples)
    await session.flush()
    await add_to_counters(session, session_id, samples=len(samples))
    return samples


async def submit_feedback(
    session: AsyncSession,
    sample_id: str,
    submission: FeedbackSubmission,
    cost: Decimal,
) -> tuple[Sample, ReviewException | None]:
    """Record a verdict on a pending sample and charge it to the training budget.

    Returns:
        The reviewed sample, and the conflicting-labels exception if one was raised

    Raises:
        SampleNotFound: Unknown sample
        AlreadyReviewed: The sample is not pending
        TrainingBudgetExhausted: The training budget cannot cover ``cost``
    """
    model = await load_sample(session, sample_id)
    if model.status != SampleStatus.PENDING.value:
        raise AlreadyReviewed(sample_id, model.status)

    session_model = await load_session(session, model.session_id)
    if not await debit_session(session, model.session_id, BudgetKind.TRAINING, cost):
        left = remaining(stored_budget(session_model, BudgetKind.TRAINING))
        raise TrainingBudgetExhausted(left, cost)

    if not await mark_reviewed(session, sample_id, submission, utcnow()):
        # Lost a race with another reviewer
        current = await load_sample(session, sample_id)
        raise AlreadyReviewed(sample_id, current.status)

    await add_to_counters(session, model.session_id, feedback=1)
    reviewed, correct = await count_reviewed(session, model.session_id)
    await set_counters(session, model.session_id, accuracy=compute_accuracy(correct, reviewed))

    model = await load_sample(session, sample_id)
    conflict = await flag_conflict(session, session_model.user_id, model)

    logger.info(
        "feedback_recorded: sample=%s session=%s correct=%s",
        sample_id,
        model.session_id,
        submission.is_correct,
    )
    return to_sample(model), (to_exception(conflict) if conflict else None)


async def skip(session: AsyncSession, sample_id: str) -> Sample:
    """Set a pending sample aside without reviewing it. Free of charge."""
    model = await load_sample(session, sample_id)
    if model.status != SampleStatus.PENDING.value or not await mark_skipped(session, sample_id):
        current = await load_sample(session, sample_id)
        raise AlreadyReviewed(sample_id, current.status)
    return to_sample(await load_sample(session, sample_id))


async def next_pending(session: AsyncSession, session_id: str) -> Sample | None:
    model = await fetch_next_pending(session, session_id)
    return to_sample(model) if model else None


async def list_samples(
    session: AsyncSession, session_id: str, filters: SampleFilters | None = None
) -> SamplePage:
    filters = filters or SampleFilters()
    rows, total = await fetch_samples(session, session_id, filters)
    return SamplePage(
        items=[to_sample(row) for row in rows],
        total=total,
        limit=filters.limit,
        offset=filters.offset,
    )


async def uncertain_samples(
    session: AsyncSession, session_id: str, limit: int = 10, max_confidence: int = 70
) -> list[Sample]:
    rows = await fetch_uncertain(session, session_id, limit=limit, max_confidence=max_confidence)
    return [to_sample(row) for row in rows]


async def reconcile_counters(session: AsyncSession, session_id: str) -> DiscoverySessionModel:
    """Recompute a session's aggregate counters and accuracy from its rows."""
    await load_session(session, session_id)

    samples_collected = await session.scalar(
        select(func.count(ReviewSampleModel.id)).where(ReviewSampleModel.session_id == session_id)
    )
    exceptions_count = await session.scalar(
        select(func.count(ReviewExceptionModel.id)).where(
            ReviewExceptionModel.session_id == session_id
        )
    )
    reviewed, correct = await count_reviewed(session, session_id)

    await set_counters(
        session,
        session_id,
        accuracy=compute_accuracy(correct, reviewed),
        samples_collected=int(samples_collected or 0),
        feedback_received=reviewed,
        exceptions_count=int(exceptions_count or 0),
    )
    logger.info(
        "counters_reconciled: session=%s samples=%s feedback=%s exceptions=%s",
        session_id,
        samples_collected,
        reviewed,
        exceptions_count,
    )
    return await load_session(session, session_id)
