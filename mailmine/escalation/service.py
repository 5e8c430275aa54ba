"""Exception escalation: flag samples that need a human and alert the user.

Exceptions are written in the same transaction as whatever raised them. Alerts
go out only after that transaction commits, on background tasks, and a failed
alert never affects the stored exception.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from sqlalchemy import desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailmine.collaborators import Alerter
from mailmine.db.connection import session_scope
from mailmine.db.models import ReviewExceptionModel, ReviewSampleModel, utcnow
from mailmine.errors import ExceptionNotFound
from mailmine.models import (
    ExceptionItem,
    ExceptionSeverity,
    ExceptionStatus,
    ExceptionType,
    ReviewException,
)
from mailmine.samples.repository import fetch_conflicting_reviews
from mailmine.sessions.repository import add_to_counters

logger = logging.getLogger(__name__)


def severity_for(confidence: int, floor: int) -> ExceptionSeverity | None:
    """Severity of a prediction's confidence, or None if it needs no escalation."""
    if confidence < floor / 2:
        return ExceptionSeverity.HIGH
    if confidence < floor:
        return ExceptionSeverity.MEDIUM
    return None


def stage_low_confidence(
    user_id: str, samples: Iterable[ReviewSampleModel], floor: int
) -> list[ReviewExceptionModel]:
    """Build one low-confidence exception per sample under ``floor``.

    Samples must already have ids (flushed); rows are returned unsaved.
    """
    staged = []
    for sample in samples:
        severity = severity_for(sample.prediction_confidence, floor)
        if severity is None:
            continue
        staged.append(
            ReviewExceptionModel(
                session_id=sample.session_id,
                user_id=user_id,
                type=ExceptionType.LOW_CONFIDENCE.value,
                severity=severity.value,
                status=ExceptionStatus.PENDING.value,
                reason=(
                    f"Prediction '{sample.prediction_label}' has "
                    f"{sample.prediction_confidence}% confidence"
                ),
                sample_id=sample.id,
                item_content=sample.content_text,
                item_context=sample.content_context,
            )
        )
    return staged


async def record_exceptions(
    session: AsyncSession, session_id: str, exceptions: list[ReviewExceptionModel]
) -> list[ReviewExceptionModel]:
    """Persist staged exceptions and bump the session's exception counter."""
    if not exceptions:
        return []
    session.add_all(exceptions)
    await session.flush()
    await add_to_counters(session, session_id, exceptions=len(exceptions))
    return exceptions


async def record_exception(
    session: AsyncSession,
    session_id: str,
    user_id: str,
    type_: ExceptionType,
    severity: ExceptionSeverity,
    reason: str,
    item: ExceptionItem,
) -> ReviewExceptionModel:
    model = ReviewExceptionModel(
        session_id=session_id,
        user_id=user_id,
        type=type_.value,
        severity=severity.value,
        status=ExceptionStatus.PENDING.value,
        reason=reason,
        sample_id=item.sample_id,
        item_content=item.content,
        item_context=item.context,
    )
    await record_exceptions(session, session_id, [model])
    return model


async def flag_conflict(
    session: AsyncSession, user_id: str, sample: ReviewSampleModel
) -> ReviewExceptionModel | None:
    """Raise a conflicting-labels exception if earlier feedback disagrees with this one."""
    conflicts = await fetch_conflicting_reviews(session, sample)
    if not conflicts:
        return None

    verdict = "correct" if sample.feedback_is_correct else "incorrect"
    return await record_exception(
        session,
        sample.session_id,
        user_id,
        ExceptionType.CONFLICTING_LABELS,
        ExceptionSeverity.MEDIUM,
        (
            f"'{sample.content_text}' as {sample.prediction_label} was marked {verdict}, "
            f"but {len(conflicts)} earlier review(s) disagree"
        ),
        ExceptionItem(
            sample_id=sample.id,
            content=sample.content_text,
            context=sample.content_context,
        ),
    )


async def list_exceptions(
    session: AsyncSession,
    session_id: str,
    status: ExceptionStatus | None = None,
) -> list[ReviewException]:
    stmt = select(ReviewExceptionModel).where(ReviewExceptionModel.session_id == session_id)
    if status:
        stmt = stmt.where(ReviewExceptionModel.status == status.value)
    stmt = stmt.order_by(desc(ReviewExceptionModel.created_at))
    rows = await session.execute(stmt)
    return [to_exception(model) for model in rows.scalars()]


async def resolve_exception(
    session: AsyncSession, exception_id: str, status: ExceptionStatus
) -> ReviewException:
    """Mark an exception reviewed or dismissed."""
    if status == ExceptionStatus.PENDING:
        raise ValueError("An exception can only be resolved as reviewed or dismissed")

    model = await session.get(ReviewExceptionModel, exception_id)
    if model is None:
        raise ExceptionNotFound(exception_id)

    model.status = status.value
    model.reviewed_at = utcnow()
    await session.flush()
    return to_exception(model)


async def mark_notified(session: AsyncSession, exception_id: str) -> None:
    stmt = (
        update(ReviewExceptionModel)
        .where(ReviewExceptionModel.id == exception_id)
        .values(notified_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


def to_exception(model: ReviewExceptionModel) -> ReviewException:
    return ReviewException(
        id=model.id,
        session_id=model.session_id,
        user_id=model.user_id,
        type=ExceptionType(model.type),
        severity=ExceptionSeverity(model.severity),
        status=ExceptionStatus(model.status),
        reason=model.reason,
        item=ExceptionItem(
            sample_id=model.sample_id,
            content=model.item_content,
            context=model.item_context,
        ),
        notified_at=model.notified_at,
        reviewed_at=model.reviewed_at,
        created_at=model.created_at,
    )


class AlertDispatcher:
    """Sends committed exceptions to an :class:`Alerter` in the background.

    Delivery runs on its own task per exception; a successful send stamps
    ``notified_at`` in a separate short transaction.
    """

    def __init__(
        self,
        alerter: Alerter | None,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.alerter = alerter
        self.session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, exceptions: Iterable[ReviewException]) -> None:
        if self.alerter is None:
            return
        for exception in exceptions:
            task = asyncio.create_task(self._deliver(exception))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def wait_idle(self) -> None:
        """Block until every in-flight alert has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, exception: ReviewException) -> None:
        try:
            delivered = await self.alerter.notify(exception.user_id, exception)
        except Exception:
            logger.exception("exception_alert_failed: exception=%s", exception.id)
            return

        if not delivered:
            logger.info("exception_alert_not_delivered: exception=%s", exception.id)
            return

        try:
            async with session_scope(self.session_factory) as session:
                await mark_notified(session, exception.id)
        except Exception:
            logger.exception("exception_notified_stamp_failed: exception=%s", exception.id)
