"""Dual-budget accounting for discovery and training spend.

The arithmetic helpers are pure. The ``*_session`` coroutines apply a debit or
top-up to a stored session as a single guarded UPDATE, so concurrent writers
can never push ``used`` past ``total`` or lose an increment.

Example:
    >>> budget = Budget(total=Decimal("1000"), used=Decimal("200"))
    >>> can_afford(budget, Decimal("900"))
    False
    >>> debit(budget, Decimal("800")).remaining
    Decimal('0')
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import Decimal
from enum import Enum

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.db.models import DiscoverySessionModel, utcnow
from mailmine.errors import BudgetExhausted
from mailmine.models import Budget

logger = logging.getLogger(__name__)


class BudgetKind(str, Enum):
    DISCOVERY = "discovery"
    TRAINING = "training"


_COLUMNS = {
    BudgetKind.DISCOVERY: (
        DiscoverySessionModel.discovery_budget_total,
        DiscoverySessionModel.discovery_budget_used,
    ),
    BudgetKind.TRAINING: (
        DiscoverySessionModel.training_budget_total,
        DiscoverySessionModel.training_budget_used,
    ),
}


def remaining(budget: Budget) -> Decimal:
    return budget.total - budget.used


def can_afford(budget: Budget, cost: Decimal) -> bool:
    return remaining(budget) >= cost


def debit(budget: Budget, cost: Decimal, kind: BudgetKind = BudgetKind.DISCOVERY) -> Budget:
    """Return ``budget`` with ``cost`` added to ``used``.

    Raises:
        BudgetExhausted: If the remaining capacity cannot cover ``cost``
    """
    if cost < 0:
        raise ValueError("cost must be non-negative")
    if not can_afford(budget, cost):
        raise BudgetExhausted(kind.value, remaining(budget), cost)
    return Budget(total=budget.total, used=budget.used + cost)


def stored_budget(model: DiscoverySessionModel, kind: BudgetKind) -> Budget:
    """The ``kind`` budget of a stored session as a :class:`Budget`."""
    total_col, used_col = _COLUMNS[kind]
    return Budget(total=getattr(model, total_col.key), used=getattr(model, used_col.key))


class Allowance:
    """Spending tab for one unit of work against a fixed starting capacity.

    The walker opens one per source-day with the session's remaining discovery
    budget and charges each item to it; the accumulated ``spent`` is debited
    when the day is committed.
    """

    def __init__(self, capacity: Decimal):
        self.capacity = capacity
        self.budget = Budget(total=capacity)

    @property
    def spent(self) -> Decimal:
        return self.budget.used

    @property
    def remaining(self) -> Decimal:
        return remaining(self.budget)

    def can_cover(self, cost: Decimal) -> bool:
        return can_afford(self.budget, cost)

    def charge(self, cost: Decimal) -> None:
        self.budget = debit(self.budget, cost)


async def debit_session(
    session: AsyncSession, session_id: str, kind: BudgetKind, cost: Decimal
) -> bool:
    """Atomically add ``cost`` to a stored budget's ``used``.

    The UPDATE only matches while ``used + cost <= total``, so the invariant
    holds regardless of what else is writing.

    Returns:
        True if the debit was applied, False if the budget could not cover it
    """
    if cost < 0:
        raise ValueError("cost must be non-negative")
    if cost == 0:
        return True

    total_col, used_col = _COLUMNS[kind]
    stmt = (
        update(DiscoverySessionModel)
        .where(
            DiscoverySessionModel.id == session_id,
            used_col + cost <= total_col,
        )
        .values({used_col.key: used_col + cost, "updated_at": utcnow()})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    applied = result.rowcount == 1
    if not applied:
        logger.info("budget_debit_refused: session=%s kind=%s cost=%s", session_id, kind.value, cost)
    return applied


async def top_up_session(
    session: AsyncSession, session_id: str, kind: BudgetKind, amount: Decimal
) -> bool:
    """Atomically increase a stored budget's ``total`` by ``amount``.

    Returns:
        True if the session exists and was updated
    """
    if amount <= 0:
        raise ValueError("top-up amount must be positive")

    total_col, _ = _COLUMNS[kind]
    stmt = (
        update(DiscoverySessionModel)
        .where(DiscoverySessionModel.id == session_id)
        .values({total_col.key: total_col + amount, "updated_at": utcnow()})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


class BudgetAccountant:
    """Per-session mutex registry serialising budget debits in this process."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, session_id: str):
        async with self._locks[session_id]:
            yield

    def forget(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
