"""Database queries for review samples."""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime
from typing import Sequence

from sqlalchemy import asc, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.db.models import ReviewSampleModel
from mailmine.errors import SampleNotFound
from mailmine.models import (
    ExtractionResult,
    Feedback,
    FeedbackSubmission,
    Prediction,
    Sample,
    SampleContent,
    SampleFilters,
    SampleStatus,
    SampleType,
    SourceType,
)


def build_samples(
    session_id: str,
    result: ExtractionResult,
    source_type: SourceType,
    day: date,
    start_ordinal: int = 0,
) -> list[ReviewSampleModel]:
    """Turn one extraction result into pending sample rows.

    Every entity and every relationship yields exactly one sample.
    """
    samples: list[ReviewSampleModel] = []
    ordinal = start_ordinal
    day_str = day.isoformat()

    for entity in result.entities:
        samples.append(
            ReviewSampleModel(
                session_id=session_id,
                ordinal=ordinal,
                type=SampleType.ENTITY.value,
                content_text=entity.value,
                content_context=entity.context or f"Found in {source_type.value} on {day_str}",
                source_id=result.source_id,
                source_type=source_type.value,
                source_date=day,
                prediction_label=entity.type,
                prediction_confidence=round(entity.confidence * 100),
                prediction_reasoning=f"Extracted as {entity.type} from {source_type.value}",
                status=SampleStatus.PENDING.value,
            )
        )
        ordinal += 1

    for rel in result.relationships:
        samples.append(
            ReviewSampleModel(
                session_id=session_id,
                ordinal=ordinal,
                type=SampleType.RELATIONSHIP.value,
                content_text=f"{rel.from_value} -> {rel.to_value}",
                content_context=rel.evidence
                or f"Relationship found in {source_type.value} on {day_str}",
                source_id=result.source_id,
                source_type=source_type.value,
                source_date=day,
                prediction_label=rel.relationship_type,
                prediction_confidence=round(rel.confidence * 100),
                prediction_reasoning=f"{rel.from_value} {rel.relationship_type} {rel.to_value}",
                status=SampleStatus.PENDING.value,
            )
        )
        ordinal += 1

    return samples


async def next_ordinal(session: AsyncSession, session_id: str) -> int:
    stmt = select(func.coalesce(func.max(ReviewSampleModel.ordinal) + 1, 0)).where(
        ReviewSampleModel.session_id == session_id
    )
    return int((await session.execute(stmt)).scalar_one())


async def fetch_sample(session: AsyncSession, sample_id: str) -> ReviewSampleModel | None:
    stmt = (
        select(ReviewSampleModel)
        .where(ReviewSampleModel.id == sample_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def load_sample(session: AsyncSession, sample_id: str) -> ReviewSampleModel:
    model = await fetch_sample(session, sample_id)
    if model is None:
        raise SampleNotFound(sample_id)
    return model


async def fetch_next_pending(
    session: AsyncSession, session_id: str
) -> ReviewSampleModel | None:
    stmt = (
        select(ReviewSampleModel)
        .where(
            ReviewSampleModel.session_id == session_id,
            ReviewSampleModel.status == SampleStatus.PENDING.value,
        )
        .order_by(asc(ReviewSampleModel.ordinal))
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def fetch_samples(
    session: AsyncSession, session_id: str, filters: SampleFilters
) -> tuple[list[ReviewSampleModel], int]:
    """Return one page of samples plus the total matching count."""
    conditions = [ReviewSampleModel.session_id == session_id]
    if filters.status:
        conditions.append(ReviewSampleModel.status == filters.status.value)
    if filters.type:
        conditions.append(ReviewSampleModel.type == filters.type.value)
    if filters.source_type:
        conditions.append(ReviewSampleModel.source_type == filters.source_type.value)
    if filters.max_confidence is not None:
        conditions.append(ReviewSampleModel.prediction_confidence <= filters.max_confidence)

    total = await session.scalar(
        select(func.count()).select_from(ReviewSampleModel).where(*conditions)
    )

    stmt = (
        select(ReviewSampleModel)
        .where(*conditions)
        .order_by(asc(ReviewSampleModel.ordinal))
        .limit(filters.limit)
        .offset(filters.offset)
    )
    rows = await session.execute(stmt)
    return list(rows.scalars()), int(total or 0)


async def fetch_uncertain(
    session: AsyncSession, session_id: str, limit: int = 10, max_confidence: int = 70
) -> list[ReviewSampleModel]:
    """Pending samples below ``max_confidence``, least confident first."""
    stmt = (
        select(ReviewSampleModel)
        .where(
            ReviewSampleModel.session_id == session_id,
            ReviewSampleModel.status == SampleStatus.PENDING.value,
            ReviewSampleModel.prediction_confidence < max_confidence,
        )
        .order_by(asc(ReviewSampleModel.prediction_confidence), asc(ReviewSampleModel.ordinal))
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars())


async def mark_reviewed(
    session: AsyncSession,
    sample_id: str,
    submission: FeedbackSubmission,
    feedback_at: datetime,
) -> bool:
    """Flip a pending sample to reviewed; False if it was no longer pending."""
    stmt = (
        update(ReviewSampleModel)
        .where(
            ReviewSampleModel.id == sample_id,
            ReviewSampleModel.status == SampleStatus.PENDING.value,
        )
        .values(
            status=SampleStatus.REVIEWED.value,
            feedback_is_correct=submission.is_correct,
            feedback_corrected_label=submission.corrected_label,
            feedback_notes=submission.notes,
            feedback_at=feedback_at,
        )
        .execution_options(synchronize_session=False)
    )
    return (await session.execute(stmt)).rowcount == 1


async def mark_skipped(session: AsyncSession, sample_id: str) -> bool:
    stmt = (
        update(ReviewSampleModel)
        .where(
            ReviewSampleModel.id == sample_id,
            ReviewSampleModel.status == SampleStatus.PENDING.value,
        )
        .values(status=SampleStatus.SKIPPED.value)
        .execution_options(synchronize_session=False)
    )
    return (await session.execute(stmt)).rowcount == 1


async def count_by_status(
    session: AsyncSession, session_id: str
) -> dict[tuple[str, str, bool | None], int]:
    """Sample counts keyed by (type, status, feedback_is_correct)."""
    stmt = (
        select(
            ReviewSampleModel.type,
            ReviewSampleModel.status,
            ReviewSampleModel.feedback_is_correct,
            func.count(ReviewSampleModel.id),
        )
        .where(ReviewSampleModel.session_id == session_id)
        .group_by(
            ReviewSampleModel.type,
            ReviewSampleModel.status,
            ReviewSampleModel.feedback_is_correct,
        )
    )
    counts: dict[tuple[str, str, bool | None], int] = defaultdict(int)
    for type_, status, is_correct, count in (await session.execute(stmt)).all():
        counts[(type_, status, is_correct)] += count
    return counts


async def count_reviewed(session: AsyncSession, session_id: str) -> tuple[int, int]:
    """Return (reviewed, correct) for a session, straight from the rows."""
    stmt = select(
        func.count(ReviewSampleModel.id),
        func.coalesce(
            func.sum(case((ReviewSampleModel.feedback_is_correct.is_(True), 1), else_=0)), 0
        ),
    ).where(
        ReviewSampleModel.session_id == session_id,
        ReviewSampleModel.status == SampleStatus.REVIEWED.value,
    )
    reviewed, correct = (await session.execute(stmt)).one()
    return int(reviewed or 0), int(correct or 0)


async def fetch_conflicting_reviews(
    session: AsyncSession, sample: ReviewSampleModel
) -> Sequence[ReviewSampleModel]:
    """Earlier reviewed samples with the same prediction but the opposite verdict."""
    stmt = (
        select(ReviewSampleModel)
        .where(
            ReviewSampleModel.session_id == sample.session_id,
            ReviewSampleModel.id != sample.id,
            ReviewSampleModel.type == sample.type,
            ReviewSampleModel.content_text == sample.content_text,
            ReviewSampleModel.prediction_label == sample.prediction_label,
            ReviewSampleModel.status == SampleStatus.REVIEWED.value,
            ReviewSampleModel.feedback_is_correct.is_not(sample.feedback_is_correct),
        )
        .order_by(asc(ReviewSampleModel.feedback_at))
    )
    return list((await session.execute(stmt)).scalars())


def to_sample(model: ReviewSampleModel) -> Sample:
    feedback = None
    if model.feedback_at is not None:
        feedback = Feedback(
            is_correct=bool(model.feedback_is_correct),
            corrected_label=model.feedback_corrected_label,
            notes=model.feedback_notes,
            feedback_at=model.feedback_at,
        )

    return Sample(
        id=model.id,
        session_id=model.session_id,
        type=SampleType(model.type),
        content=SampleContent(
            text=model.content_text,
            context=model.content_context,
            source_id=model.source_id,
            source_type=SourceType(model.source_type) if model.source_type else None,
            source_date=model.source_date,
        ),
        prediction=Prediction(
            label=model.prediction_label,
            confidence=model.prediction_confidence,
            reasoning=model.prediction_reasoning,
        ),
        status=SampleStatus(model.status),
        feedback=feedback,
        created_at=model.created_at,
    )
