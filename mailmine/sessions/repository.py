"""Database queries for discovery sessions."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.db.models import DiscoverySessionModel, utcnow
from mailmine.errors import SessionNotFound
from mailmine.models import Budget, DiscoverySession, SessionMode, SessionStatus
from mailmine.sessions.state import sources_for


async def create_session(
    session: AsyncSession,
    user_id: str,
    discovery_budget: Decimal,
    training_budget: Decimal,
    mode: SessionMode = SessionMode.COLLECT_FEEDBACK,
) -> DiscoverySessionModel:
    """Insert a new running session.

    Raises:
        IntegrityError: On flush, if the user already has an active session
    """
    model = DiscoverySessionModel(
        user_id=user_id,
        status=SessionStatus.RUNNING.value,
        mode=mode.value,
        discovery_budget_total=discovery_budget,
        discovery_budget_used=Decimal("0"),
        training_budget_total=training_budget,
        training_budget_used=Decimal("0"),
    )
    session.add(model)
    await session.flush()
    return model


async def fetch_session(session: AsyncSession, session_id: str) -> DiscoverySessionModel | None:
    stmt = (
        select(DiscoverySessionModel)
        .where(DiscoverySessionModel.id == session_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def load_session(session: AsyncSession, session_id: str) -> DiscoverySessionModel:
    model = await fetch_session(session, session_id)
    if model is None:
        raise SessionNotFound(session_id)
    return model


async def fetch_active_session(
    session: AsyncSession, user_id: str
) -> DiscoverySessionModel | None:
    """Return the user's session with no ``completed_at``, if any."""
    stmt = (
        select(DiscoverySessionModel)
        .where(
            DiscoverySessionModel.user_id == user_id,
            DiscoverySessionModel.completed_at.is_(None),
        )
        .order_by(desc(DiscoverySessionModel.created_at))
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_sessions(session: AsyncSession, user_id: str) -> list[DiscoverySessionModel]:
    stmt = (
        select(DiscoverySessionModel)
        .where(DiscoverySessionModel.user_id == user_id)
        .order_by(desc(DiscoverySessionModel.created_at))
    )
    return list((await session.execute(stmt)).scalars())


async def list_sessions_in(
    session: AsyncSession, statuses: Iterable[SessionStatus]
) -> list[DiscoverySessionModel]:
    stmt = select(DiscoverySessionModel).where(
        DiscoverySessionModel.status.in_([s.value for s in statuses])
    )
    return list((await session.execute(stmt)).scalars())


async def transition(
    session: AsyncSession,
    session_id: str,
    target: SessionStatus,
    reason: str | None = None,
    allowed_from: Iterable[SessionStatus] | None = None,
) -> bool:
    """Compare-and-set the session status.

    The UPDATE only matches while the stored status is one from which
    ``target`` is reachable (narrowed further by ``allowed_from``), so a
    concurrent pause or cancel is never overwritten by a stale writer.

    Returns:
        True if the status changed
    """
    sources = sources_for(target)
    if allowed_from is not None:
        sources = sources & frozenset(allowed_from)
    if not sources:
        return False

    now = utcnow()
    values: dict = {"status": target.value, "status_reason": reason, "updated_at": now}
    if target == SessionStatus.COMPLETE:
        values["completed_at"] = now
    if target == SessionStatus.TRAINING:
        values["training_started_at"] = func.coalesce(
            DiscoverySessionModel.training_started_at, now
        )

    stmt = (
        update(DiscoverySessionModel)
        .where(
            DiscoverySessionModel.id == session_id,
            DiscoverySessionModel.status.in_([s.value for s in sources]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def add_to_counters(
    session: AsyncSession,
    session_id: str,
    samples: int = 0,
    feedback: int = 0,
    exceptions: int = 0,
) -> None:
    """Increment aggregate counters in place (no read-modify-write)."""
    if not (samples or feedback or exceptions):
        return
    stmt = (
        update(DiscoverySessionModel)
        .where(DiscoverySessionModel.id == session_id)
        .values(
            samples_collected=DiscoverySessionModel.samples_collected + samples,
            feedback_received=DiscoverySessionModel.feedback_received + feedback,
            exceptions_count=DiscoverySessionModel.exceptions_count + exceptions,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def set_counters(
    session: AsyncSession,
    session_id: str,
    *,
    accuracy: float,
    samples_collected: int | None = None,
    feedback_received: int | None = None,
    exceptions_count: int | None = None,
) -> None:
    values: dict = {"accuracy": accuracy, "updated_at": utcnow()}
    if samples_collected is not None:
        values["samples_collected"] = samples_collected
    if feedback_received is not None:
        values["feedback_received"] = feedback_received
    if exceptions_count is not None:
        values["exceptions_count"] = exceptions_count

    stmt = (
        update(DiscoverySessionModel)
        .where(DiscoverySessionModel.id == session_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


def to_session(model: DiscoverySessionModel) -> DiscoverySession:
    return DiscoverySession(
        id=model.id,
        user_id=model.user_id,
        status=SessionStatus(model.status),
        status_reason=model.status_reason,
        mode=SessionMode(model.mode),
        discovery_budget=Budget(
            total=model.discovery_budget_total, used=model.discovery_budget_used
        ),
        training_budget=Budget(
            total=model.training_budget_total, used=model.training_budget_used
        ),
        samples_collected=model.samples_collected,
        feedback_received=model.feedback_received,
        exceptions_count=model.exceptions_count,
        accuracy=model.accuracy,
        created_at=model.created_at,
        updated_at=model.updated_at,
        completed_at=model.completed_at,
        training_started_at=model.training_started_at,
    )
