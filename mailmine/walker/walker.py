"""The day walk: backward traversal of a user's history, one source-day at a time.

Each (source, day) is processed in three phases:

1. Check the ledger and the remaining discovery budget. Nothing is spent on a
   day that is already recorded.
2. Fetch the day's items and extract them one by one, charging each item's
   cost to an in-memory :class:`Allowance` and polling for pause or cancel
   between items.
3. Commit samples, exceptions, the ledger row and the budget debit in a single
   transaction, then hand new exceptions to the alert dispatcher.

A crash anywhere before phase 3 commits leaves no trace, so the next walk
redoes the day from scratch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from mailmine.budget.accountant import (
    Allowance,
    BudgetAccountant,
    BudgetKind,
    debit_session,
    remaining,
    stored_budget,
)
from mailmine.collaborators import (
    EntitySink,
    ExtractionEngine,
    SourceClient,
    validate_extraction,
)
from mailmine.config import AppConfig
from mailmine.core.logging import get_logger
from mailmine.db.connection import session_scope
from mailmine.errors import ExtractionFailed, SourceFetchFailed
from mailmine.escalation.service import (
    AlertDispatcher,
    record_exception,
    record_exceptions,
    stage_low_confidence,
    to_exception,
)
from mailmine.ledger.repository import is_processed, mark_processed
from mailmine.models import (
    ExceptionItem,
    ExceptionSeverity,
    ExceptionType,
    ExtractionResult,
    SessionStatus,
    SourceItem,
    SourceType,
)
from mailmine.samples.service import create_samples
from mailmine.sessions.repository import load_session, transition
from mailmine.sessions.state import WALKING_STATUSES, may_walk

logger = get_logger(__name__)

SOURCE_ORDER = (SourceType.EMAIL, SourceType.CALENDAR)


class DayOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"  # already in the ledger
    EXHAUSTED = "exhausted"
    INTERRUPTED = "interrupted"


class WalkOutcome(str, Enum):
    COMPLETE = "complete"
    BUDGET_EXHAUSTED = "budget_exhausted"
    PAUSED = "paused"
    STOPPED = "stopped"  # status changed or cancel signalled


@dataclass
class _Extracted:
    item: SourceItem
    result: ExtractionResult


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class DayWalker:
    """Runs the day walk for one session at a time.

    The walker holds no per-session state; every decision is re-read from the
    database, so any number of walks may share one instance.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source_client: SourceClient,
        extraction_engine: ExtractionEngine,
        config: AppConfig,
        accountant: BudgetAccountant | None = None,
        dispatcher: AlertDispatcher | None = None,
        entity_sink: EntitySink | None = None,
        clock: Callable[[], date] = utc_today,
    ):
        self.session_factory = session_factory
        self.source_client = source_client
        self.extraction_engine = extraction_engine
        self.config = config
        self.accountant = accountant or BudgetAccountant()
        self.dispatcher = dispatcher or AlertDispatcher(None, session_factory)
        self.entity_sink = entity_sink
        self.clock = clock

    async def run(self, session_id: str, cancel: asyncio.Event | None = None) -> WalkOutcome:
        """Walk from today back through the configured history window.

        Returns when the history is exhausted, the discovery budget runs out,
        a fetch keeps failing, or the session stops being walkable.
        """
        cancel = cancel or asyncio.Event()

        async with session_scope(self.session_factory) as db:
            user_id = (await load_session(db, session_id)).user_id

        structlog.contextvars.bind_contextvars(session_id=session_id, user_id=user_id)
        try:
            return await self._walk(session_id, user_id, cancel)
        finally:
            structlog.contextvars.unbind_contextvars("session_id", "user_id")

    async def _walk(self, session_id: str, user_id: str, cancel: asyncio.Event) -> WalkOutcome:
        today = self.clock()
        logger.info("walker_started", today=today.isoformat())

        for days_ago in range(self.config.discovery.history_days):
            if await self._interrupted(session_id, cancel):
                logger.info("walker_stopped", days_ago=days_ago)
                return WalkOutcome.STOPPED

            day = today - timedelta(days=days_ago)
            for source in SOURCE_ORDER:
                try:
                    outcome = await self._process_source_day(
                        session_id, user_id, source, day, cancel
                    )
                except SourceFetchFailed as e:
                    await self.halt(session_id, str(e))
                    return WalkOutcome.PAUSED

                if outcome == DayOutcome.EXHAUSTED:
                    await self._mark_exhausted(session_id, source, day)
                    return WalkOutcome.BUDGET_EXHAUSTED
                if outcome == DayOutcome.INTERRUPTED:
                    logger.info("walker_interrupted", source=source.value, day=day.isoformat())
                    return WalkOutcome.STOPPED

        async with session_scope(self.session_factory) as db:
            moved = await transition(
                db,
                session_id,
                SessionStatus.COMPLETE,
                reason=f"Processed {self.config.discovery.history_days} days of history",
                allowed_from=WALKING_STATUSES,
            )
        logger.info("walker_history_exhausted", completed=moved)
        return WalkOutcome.COMPLETE if moved else WalkOutcome.STOPPED

    async def _process_source_day(
        self,
        session_id: str,
        user_id: str,
        source: SourceType,
        day: date,
        cancel: asyncio.Event,
    ) -> DayOutcome:
        async with session_scope(self.session_factory) as db:
            if await is_processed(db, user_id, source, day):
                return DayOutcome.SKIPPED
            model = await load_session(db, session_id)
            allowance = Allowance(remaining(stored_budget(model, BudgetKind.DISCOVERY)))

        item_cost = self.config.item_cost(source.value)
        if not allowance.can_cover(item_cost):
            return DayOutcome.EXHAUSTED

        items = await self._fetch(source, day)
        available = len(items)
        items = items[: self.config.discovery.max_items_per_day]

        extracted: list[_Extracted] = []
        covered = 0
        exhausted = False

        for item in items:
            if await self._interrupted(session_id, cancel):
                return DayOutcome.INTERRUPTED
            if not allowance.can_cover(item_cost):
                exhausted = True
                break

            try:
                result = validate_extraction(
                    item.id, await self.extraction_engine.extract(item)
                )
            except ExtractionFailed as e:
                logger.warning("item_extraction_failed", item_id=item.id, error=str(e))
                covered += 1
                continue

            # The estimate only gates the attempt; the reported cost is what
            # gets billed and must still fit.
            if not allowance.can_cover(result.cost_estimate):
                exhausted = True
                break

            allowance.charge(result.cost_estimate)
            extracted.append(_Extracted(item, result))
            covered += 1

        if exhausted and covered == 0:
            return DayOutcome.EXHAUSTED

        committed = await self._commit_day(
            session_id, user_id, source, day, extracted, allowance.spent, covered, available
        )
        if committed != DayOutcome.PROCESSED:
            return committed
        return DayOutcome.EXHAUSTED if exhausted else DayOutcome.PROCESSED

    async def _commit_day(
        self,
        session_id: str,
        user_id: str,
        source: SourceType,
        day: date,
        extracted: list[_Extracted],
        cost: Decimal,
        covered: int,
        available: int,
    ) -> DayOutcome:
        """Persist one source-day atomically.

        Returns PROCESSED once the day is in the ledger, INTERRUPTED if the
        session stopped walking, and EXHAUSTED if the stored budget refused
        the debit. Nothing is written in the last two cases.
        """
        async with self.accountant.hold(session_id):
            db = self.session_factory()
            try:
                model = await load_session(db, session_id)
                if not may_walk(SessionStatus(model.status)):
                    await db.rollback()
                    return DayOutcome.INTERRUPTED

                samples = []
                stored = 0
                for entry in extracted:
                    if self.entity_sink is not None:
                        stored += await self.entity_sink.save(user_id, entry.item, entry.result)
                    samples.extend(
                        await create_samples(db, session_id, entry.result, source, day)
                    )

                exceptions = await record_exceptions(
                    db,
                    session_id,
                    stage_low_confidence(
                        user_id, samples, self.config.training.low_confidence_floor
                    ),
                )

                await mark_processed(
                    db,
                    user_id,
                    session_id,
                    source,
                    day,
                    items_found=len(samples),
                    items_covered=covered,
                    items_available=available,
                    cost=cost,
                )

                if not await debit_session(db, session_id, BudgetKind.DISCOVERY, cost):
                    # Stored budget is lower than the allowance; the day is redone after a top-up
                    await db.rollback()
                    logger.warning("day_debit_refused", source=source.value, day=day.isoformat())
                    return DayOutcome.EXHAUSTED

                alerts = [to_exception(e) for e in exceptions]
                await db.commit()
            except IntegrityError:
                await db.rollback()
                async with session_scope(self.session_factory) as check:
                    recorded = await is_processed(check, user_id, source, day)
                if not recorded:
                    raise
                logger.info("source_day_already_recorded", source=source.value, day=day.isoformat())
                return DayOutcome.PROCESSED
            except BaseException:
                await db.rollback()
                raise
            finally:
                await db.close()

        logger.info(
            "walker_day_processed",
            source=source.value,
            day=day.isoformat(),
            samples=len(samples),
            items_covered=covered,
            items_available=available,
            entities_stored=stored,
            cost=str(cost),
        )
        self.dispatcher.dispatch(alerts)
        return DayOutcome.PROCESSED

    async def _fetch(self, source: SourceType, day: date) -> list[SourceItem]:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        fetch = (
            self.source_client.fetch_emails
            if source == SourceType.EMAIL
            else self.source_client.fetch_calendar_events
        )

        discovery = self.config.discovery
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(discovery.fetch_retry_attempts),
                wait=wait_exponential(
                    multiplier=discovery.fetch_retry_wait_seconds,
                    max=discovery.fetch_retry_wait_seconds * 8,
                ),
                reraise=True,
            ):
                with attempt:
                    return list(await fetch(start, end))
        except Exception as e:
            logger.warning("source_fetch_failed", source=source.value, day=day.isoformat(), error=str(e))
            raise SourceFetchFailed(source.value, day.isoformat(), e) from e
        return []

    async def _interrupted(self, session_id: str, cancel: asyncio.Event) -> bool:
        if cancel.is_set():
            return True
        async with session_scope(self.session_factory) as db:
            model = await load_session(db, session_id)
            return not may_walk(SessionStatus(model.status))

    async def _mark_exhausted(self, session_id: str, source: SourceType, day: date) -> None:
        async with session_scope(self.session_factory) as db:
            moved = await transition(
                db,
                session_id,
                SessionStatus.BUDGET_EXHAUSTED,
                reason=f"Discovery budget exhausted at {source.value} {day.isoformat()}",
                allowed_from=WALKING_STATUSES,
            )
        logger.info("budget_exhausted", source=source.value, day=day.isoformat(), moved=moved)

    async def halt(self, session_id: str, reason: str) -> None:
        """Pause a session after a failure and record an error exception."""
        async with session_scope(self.session_factory) as db:
            model = await load_session(db, session_id)
            paused = await transition(
                db,
                session_id,
                SessionStatus.PAUSED,
                reason=reason,
                allowed_from=WALKING_STATUSES,
            )
            exception = await record_exception(
                db,
                session_id,
                model.user_id,
                ExceptionType.ERROR,
                ExceptionSeverity.HIGH,
                reason,
                ExceptionItem(content=f"Discovery session {session_id}", context=reason),
            )
            alert = to_exception(exception)

        logger.warning("walker_halted", session_id=session_id, reason=reason, paused=paused)
        self.dispatcher.dispatch([alert])
