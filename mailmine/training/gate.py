"""Feedback statistics and the auto-train gate."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.db.models import DiscoverySessionModel
from mailmine.models import (
    FeedbackStats,
    SampleStatus,
    SampleType,
    SessionMode,
    SessionStatus,
    TypeStats,
)
from mailmine.samples.repository import count_by_status
from mailmine.sessions.repository import load_session, transition

logger = logging.getLogger(__name__)

MIN_FEEDBACK_FOR_AUTO_TRAIN = 50


def compute_accuracy(correct: int, reviewed: int) -> float:
    """Percentage of reviewed samples marked correct, 0.0 when none are reviewed."""
    if reviewed <= 0:
        return 0.0
    return round(correct / reviewed * 100, 2)


def auto_train_ready(
    feedback_received: int, threshold: int = MIN_FEEDBACK_FOR_AUTO_TRAIN
) -> bool:
    return feedback_received >= threshold


async def feedback_stats(
    session: AsyncSession,
    session_id: str,
    threshold: int = MIN_FEEDBACK_FOR_AUTO_TRAIN,
) -> FeedbackStats:
    """Aggregate review progress for a session, overall and per sample type."""
    counts = await count_by_status(session, session_id)

    by_type: dict[SampleType, TypeStats] = {t: TypeStats() for t in SampleType}
    stats = FeedbackStats(min_feedback_for_auto_train=threshold)

    for (type_, status, is_correct), count in counts.items():
        type_stats = by_type[SampleType(type_)]
        type_stats.total += count
        stats.total_samples += count

        if status == SampleStatus.PENDING.value:
            stats.pending += count
        elif status == SampleStatus.SKIPPED.value:
            stats.skipped += count
        elif status == SampleStatus.REVIEWED.value:
            stats.reviewed += count
            type_stats.reviewed += count
            if is_correct:
                stats.correct += count
                type_stats.correct += count

    for type_stats in by_type.values():
        type_stats.accuracy = compute_accuracy(type_stats.correct, type_stats.reviewed)

    stats.accuracy = compute_accuracy(stats.correct, stats.reviewed)
    stats.auto_train_ready = auto_train_ready(stats.reviewed, threshold)
    stats.by_type = by_type
    return stats


def resume_status(model: DiscoverySessionModel) -> SessionStatus:
    """Walking status for a stopped session: training once it has entered it."""
    if model.training_started_at is not None:
        return SessionStatus.TRAINING
    return SessionStatus.RUNNING


async def maybe_start_training(
    session: AsyncSession,
    session_id: str,
    threshold: int = MIN_FEEDBACK_FOR_AUTO_TRAIN,
) -> bool:
    """Move an auto-train session from running to training once it has enough feedback.

    Collect-feedback sessions are never moved; their readiness is only reported.
    A session enters training at most once.

    Returns:
        True if this call performed the transition
    """
    model = await load_session(session, session_id)
    if model.mode != SessionMode.AUTO_TRAIN.value or model.training_started_at is not None:
        return False
    if not auto_train_ready(model.feedback_received, threshold):
        return False

    moved = await transition(
        session,
        session_id,
        SessionStatus.TRAINING,
        reason=f"{model.feedback_received} feedback items received",
        allowed_from={SessionStatus.RUNNING},
    )
    if moved:
        logger.info(
            "auto_train_triggered: session=%s feedback=%s", session_id, model.feedback_received
        )
    return moved
