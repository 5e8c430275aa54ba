"""Day ledger: the idempotency record of completed (user, source, day) work.

A row is only ever written in the same transaction that persists the day's
samples and debits its cost, so a crash mid-day leaves no row behind and the
day is redone on the next walk.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import desc, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.db.models import DiscoveryProgressModel
from mailmine.models import ProgressEntry, ProgressInfo, SourceType


async def is_processed(
    session: AsyncSession, user_id: str, source_type: SourceType, day: date
) -> bool:
    stmt = (
        select(DiscoveryProgressModel.id)
        .where(
            DiscoveryProgressModel.user_id == user_id,
            DiscoveryProgressModel.source_type == source_type.value,
            DiscoveryProgressModel.processed_date == day,
        )
        .limit(1)
    )
    return (await session.execute(stmt)).first() is not None


async def mark_processed(
    session: AsyncSession,
    user_id: str,
    session_id: str,
    source_type: SourceType,
    day: date,
    items_found: int,
    items_covered: int = 0,
    items_available: int = 0,
    cost: Decimal = Decimal("0"),
) -> DiscoveryProgressModel:
    """Add the ledger row for a completed source-day.

    The caller owns the transaction; a duplicate triple fails on the unique
    constraint when it is flushed.
    """
    entry = DiscoveryProgressModel(
        user_id=user_id,
        session_id=session_id,
        source_type=source_type.value,
        processed_date=day,
        items_found=items_found,
        items_covered=items_covered,
        items_available=items_available,
        cost=cost,
    )
    session.add(entry)
    await session.flush()
    return entry


async def session_progress(session: AsyncSession, session_id: str) -> ProgressInfo:
    """Distinct days processed and items discovered by one session."""
    stmt = select(
        func.count(distinct(DiscoveryProgressModel.processed_date)),
        func.coalesce(func.sum(DiscoveryProgressModel.items_found), 0),
    ).where(DiscoveryProgressModel.session_id == session_id)
    days, items = (await session.execute(stmt)).one()
    return ProgressInfo(days_processed=int(days or 0), items_discovered=int(items or 0))


async def list_progress(
    session: AsyncSession, user_id: str, session_id: str | None = None
) -> list[ProgressEntry]:
    """Ledger rows for a user, newest day first."""
    stmt = select(DiscoveryProgressModel).where(DiscoveryProgressModel.user_id == user_id)
    if session_id:
        stmt = stmt.where(DiscoveryProgressModel.session_id == session_id)
    stmt = stmt.order_by(
        desc(DiscoveryProgressModel.processed_date), DiscoveryProgressModel.source_type
    )

    rows = await session.execute(stmt)
    return [_to_progress_entry(model) for model in rows.scalars()]


def _to_progress_entry(model: DiscoveryProgressModel) -> ProgressEntry:
    return ProgressEntry(
        id=model.id,
        user_id=model.user_id,
        session_id=model.session_id,
        source_type=SourceType(model.source_type),
        processed_date=model.processed_date,
        items_found=model.items_found,
        processed_at=model.processed_at,
    )
