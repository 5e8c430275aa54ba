"""End-to-end tests for the day walk through DiscoveryEngine.

The walk covers three days (2026-03-15 back to 2026-03-13) against fake
mail and calendar clients, on a file-backed SQLite database.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from mailmine.db.models import DiscoveryProgressModel
from mailmine.errors import InvalidTransition, NoActiveWalker
from mailmine.models import (
    ExceptionType,
    SessionStatus,
    SourceType,
)
from mailmine.sessions.repository import create_session, transition
from mailmine.walker.walker import WalkOutcome
from tests.conftest import TODAY, make_items
from tests.integration.helpers import finish, wait_for_fetch

YESTERDAY = TODAY - timedelta(days=1)
OLDEST = TODAY - timedelta(days=2)
EMAIL = SourceType.EMAIL
CALENDAR = SourceType.CALENDAR


async def _ledger(session_factory, session_id=None) -> dict[tuple[str, date], DiscoveryProgressModel]:
    async with session_factory() as db:
        stmt = select(DiscoveryProgressModel)
        if session_id:
            stmt = stmt.where(DiscoveryProgressModel.session_id == session_id)
        rows = (await db.execute(stmt)).scalars()
        return {(row.source_type, row.processed_date): row for row in rows}


@pytest.mark.asyncio
async def test_walk_runs_until_budget_is_exhausted(engine, source_client, session_factory):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 2, cost=50))
    source_client.seed(CALENDAR, TODAY, make_items(CALENDAR, TODAY, 2, cost=50))
    source_client.seed(EMAIL, YESTERDAY, make_items(EMAIL, YESTERDAY, 9, cost=100))
    source_client.seed(CALENDAR, YESTERDAY, make_items(CALENDAR, YESTERDAY, 2, cost=10))

    report = await engine.start("user-1", discovery_budget=Decimal("1000"))
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.BUDGET_EXHAUSTED
    assert status.discovery_budget.used == Decimal("1000")
    assert status.discovery_budget.remaining == Decimal("0")
    assert status.feedback_stats.total_samples == 12
    assert not status.walker_active

    ledger = await _ledger(session_factory)
    assert set(ledger) == {("email", TODAY), ("calendar", TODAY), ("email", YESTERDAY)}
    partial = ledger[("email", YESTERDAY)]
    assert (partial.items_covered, partial.items_available) == (8, 9)
    assert partial.cost == Decimal("800")


@pytest.mark.asyncio
async def test_top_up_resumes_from_oldest_unprocessed_day(engine, source_client, session_factory):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 2, cost=50))
    source_client.seed(CALENDAR, TODAY, make_items(CALENDAR, TODAY, 2, cost=50))
    source_client.seed(EMAIL, YESTERDAY, make_items(EMAIL, YESTERDAY, 9, cost=100))
    source_client.seed(CALENDAR, YESTERDAY, make_items(CALENDAR, YESTERDAY, 2, cost=100))

    report = await engine.start("user-1", discovery_budget=Decimal("1000"))
    await finish(engine, report.session_id)
    calls_before = list(source_client.calls)

    topped = await engine.top_up_discovery(report.session_id, Decimal("500"))
    assert topped.status == SessionStatus.RUNNING
    assert topped.discovery_budget.total == Decimal("1500")
    await finish(engine, report.session_id)

    new_calls = source_client.calls[len(calls_before):]
    assert new_calls[0] == (CALENDAR, YESTERDAY)
    assert (EMAIL, TODAY) not in new_calls
    assert (EMAIL, YESTERDAY) not in new_calls

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.COMPLETE
    assert status.reason == "Processed 3 days of history"
    assert status.discovery_budget.used == Decimal("1200")
    assert status.progress.days_processed == 3


@pytest.mark.asyncio
async def test_zero_budget_exhausts_before_fetching(engine, source_client):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 2))

    report = await engine.start("user-1", discovery_budget=Decimal("0"))
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.BUDGET_EXHAUSTED
    assert source_client.calls == []


@pytest.mark.asyncio
async def test_rerun_for_same_user_reprocesses_nothing(engine, source_client, extraction_engine):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 3))
    source_client.seed(CALENDAR, OLDEST, make_items(CALENDAR, OLDEST, 1))

    first = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, first.session_id)
    assert (await engine.status(first.session_id)).status == SessionStatus.COMPLETE
    extracted = list(extraction_engine.extracted)
    calls = list(source_client.calls)

    second = await engine.start("user-1", discovery_budget=Decimal("100"))
    assert second.session_id != first.session_id
    await finish(engine, second.session_id)

    status = await engine.status(second.session_id)
    assert status.status == SessionStatus.COMPLETE
    assert status.discovery_budget.used == Decimal("0")
    assert status.feedback_stats.total_samples == 0
    assert extraction_engine.extracted == extracted
    assert source_client.calls == calls
    assert len(await engine.list_progress("user-1")) == 6


@pytest.mark.asyncio
async def test_start_returns_existing_active_session(engine, source_client):
    gate = source_client.gate(TODAY)

    first = await engine.start("user-1", discovery_budget=Decimal("100"))
    await wait_for_fetch(source_client, TODAY)
    second = await engine.start("user-1", discovery_budget=Decimal("999"))

    assert second.session_id == first.session_id
    assert second.discovery_budget.total == Decimal("100")
    assert second.walker_active
    assert len(engine.supervisor._handles) == 1

    gate.set()
    await finish(engine, first.session_id)
    assert source_client.calls.count((EMAIL, TODAY)) == 1


@pytest.mark.asyncio
async def test_pause_and_resume_mid_walk(engine, source_client, session_factory):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 2))
    source_client.seed(CALENDAR, TODAY, make_items(CALENDAR, TODAY, 1))
    source_client.seed(EMAIL, YESTERDAY, make_items(EMAIL, YESTERDAY, 3))
    gate = source_client.gate(YESTERDAY)

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await wait_for_fetch(source_client, YESTERDAY)

    paused = await engine.pause(report.session_id)
    assert paused.status == SessionStatus.PAUSED
    assert paused.reason == "Paused by user"

    gate.set()
    assert await engine.supervisor.wait(report.session_id) == WalkOutcome.STOPPED

    # The interrupted day left no trace
    ledger = await _ledger(session_factory)
    assert set(ledger) == {("email", TODAY), ("calendar", TODAY)}
    status = await engine.status(report.session_id)
    assert status.discovery_budget.used == Decimal("3")
    assert status.feedback_stats.total_samples == 3

    # Pausing twice is harmless
    assert (await engine.pause(report.session_id)).status == SessionStatus.PAUSED

    resumed = await engine.resume(report.session_id)
    assert resumed.status == SessionStatus.RUNNING
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.COMPLETE
    assert status.discovery_budget.used == Decimal("6")
    assert status.feedback_stats.total_samples == 6
    assert source_client.calls.count((EMAIL, TODAY)) == 1
    assert source_client.calls.count((CALENDAR, TODAY)) == 1


@pytest.mark.asyncio
async def test_resume_refuses_exhausted_and_complete(engine, source_client):
    report = await engine.start("user-1", discovery_budget=Decimal("0"))
    await finish(engine, report.session_id)

    with pytest.raises(NoActiveWalker):
        await engine.resume(report.session_id)

    await engine.cancel(report.session_id)
    with pytest.raises(NoActiveWalker):
        await engine.resume(report.session_id)


@pytest.mark.asyncio
async def test_cancel_is_terminal(engine, source_client, session_factory):
    source_client.seed(EMAIL, YESTERDAY, make_items(EMAIL, YESTERDAY, 2))
    gate = source_client.gate(YESTERDAY)

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await wait_for_fetch(source_client, YESTERDAY)

    cancelled = await engine.cancel(report.session_id)
    assert cancelled.status == SessionStatus.COMPLETE
    assert cancelled.reason == "Cancelled by user"
    assert cancelled.completed_at is not None

    gate.set()
    assert await engine.supervisor.wait(report.session_id) == WalkOutcome.STOPPED
    assert ("email", YESTERDAY) not in await _ledger(session_factory)

    with pytest.raises(InvalidTransition):
        await engine.pause(report.session_id)
    assert (await engine.cancel(report.session_id)).status == SessionStatus.COMPLETE

    fresh = await engine.start("user-1", discovery_budget=Decimal("100"))
    assert fresh.session_id != report.session_id
    await finish(engine, fresh.session_id)


@pytest.mark.asyncio
async def test_crash_pauses_session_and_day_is_redone(
    engine, source_client, extraction_engine, alerter, session_factory
):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 1))
    yesterday_items = make_items(EMAIL, YESTERDAY, 2)
    source_client.seed(EMAIL, YESTERDAY, yesterday_items)
    extraction_engine.crash_ids.add(yesterday_items[1].id)

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.PAUSED
    assert "model backend crashed" in status.reason
    assert ("email", YESTERDAY) not in await _ledger(session_factory)
    assert status.discovery_budget.used == Decimal("1")

    [error] = await engine.list_exceptions(report.session_id)
    assert error.type == ExceptionType.ERROR
    assert [e.id for _, e in alerter.sent] == [error.id]

    extraction_engine.crash_ids.clear()
    await engine.resume(report.session_id)
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.COMPLETE
    assert status.discovery_budget.used == Decimal("3")
    assert status.feedback_stats.total_samples == 3
    assert extraction_engine.extracted.count(yesterday_items[0].id) == 2


@pytest.mark.asyncio
async def test_fetch_is_retried_before_giving_up(engine, source_client):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 1))
    source_client.failures[EMAIL] = 2

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, report.session_id)

    assert (await engine.status(report.session_id)).status == SessionStatus.COMPLETE
    assert source_client.calls.count((EMAIL, TODAY)) == 3


@pytest.mark.asyncio
async def test_persistent_fetch_failure_pauses(engine, source_client):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 1))
    source_client.failures[EMAIL] = 5

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.PAUSED
    assert "Fetching email items for 2026-03-15 failed" in status.reason
    assert status.exceptions_count == 1

    # Two failures left; the third attempt succeeds
    await engine.resume(report.session_id)
    await finish(engine, report.session_id)
    assert (await engine.status(report.session_id)).status == SessionStatus.COMPLETE
    assert source_client.calls.count((EMAIL, TODAY)) == 6


@pytest.mark.asyncio
async def test_failed_extraction_skips_only_that_item(engine, source_client, extraction_engine, session_factory):
    items = make_items(EMAIL, TODAY, 3, cost=2)
    source_client.seed(EMAIL, TODAY, items)
    extraction_engine.fail_ids.add(items[1].id)

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.COMPLETE
    assert status.feedback_stats.total_samples == 2
    assert status.discovery_budget.used == Decimal("4")

    row = (await _ledger(session_factory))[("email", TODAY)]
    assert (row.items_found, row.items_covered, row.items_available) == (2, 3, 3)


@pytest.mark.asyncio
async def test_items_per_day_are_capped(engine, source_client, session_factory):
    engine.config.discovery.max_items_per_day = 2
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 5))

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, report.session_id)

    row = (await _ledger(session_factory))[("email", TODAY)]
    assert (row.items_covered, row.items_available) == (2, 5)


@pytest.mark.asyncio
async def test_low_confidence_samples_raise_alerts(engine, source_client, alerter):
    items = make_items(EMAIL, TODAY, 1, confidence=0.2)
    items += make_items(CALENDAR, TODAY, 1, confidence=0.4)
    items += make_items(EMAIL, YESTERDAY, 1, confidence=0.95)
    source_client.seed(EMAIL, TODAY, items[:1])
    source_client.seed(CALENDAR, TODAY, items[1:2])
    source_client.seed(EMAIL, YESTERDAY, items[2:])

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await finish(engine, report.session_id)

    exceptions = await engine.list_exceptions(report.session_id)
    assert sorted(e.severity.value for e in exceptions) == ["high", "medium"]
    assert all(e.type == ExceptionType.LOW_CONFIDENCE for e in exceptions)
    assert all(e.notified_at is not None for e in exceptions)
    assert len(alerter.sent) == 2
    assert (await engine.status(report.session_id)).exceptions_count == 2


@pytest.mark.asyncio
async def test_recover_relaunches_running_sessions(engine, source_client, session_factory):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 2))
    async with session_factory() as db:
        paused = await create_session(db, "user-1", Decimal("100"), Decimal("10"))
        orphaned = await create_session(db, "user-2", Decimal("100"), Decimal("10"))
        await transition(db, paused.id, SessionStatus.PAUSED)
        await db.commit()

    launched = await engine.recover()

    assert launched == [orphaned.id]
    await finish(engine, orphaned.id)
    assert (await engine.status(orphaned.id)).status == SessionStatus.COMPLETE
    assert (await engine.status(paused.id)).status == SessionStatus.PAUSED


@pytest.mark.asyncio
async def test_shutdown_stops_walks_without_completing_them(engine, source_client):
    gate = source_client.gate(TODAY)
    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    await wait_for_fetch(source_client, TODAY)

    shutting_down = asyncio.create_task(engine.shutdown())
    await asyncio.sleep(0)
    gate.set()
    await shutting_down

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.RUNNING
    assert not status.walker_active


@pytest.mark.asyncio
async def test_refused_debit_leaves_session_exhausted(
    engine, source_client, session_factory, monkeypatch
):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 1))
    with monkeypatch.context() as m:
        m.setattr("mailmine.walker.walker.debit_session", AsyncMock(return_value=False))
        report = await engine.start("user-1", discovery_budget=Decimal("100"))
        assert await finish(engine, report.session_id) == WalkOutcome.BUDGET_EXHAUSTED

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.BUDGET_EXHAUSTED
    assert status.discovery_budget.used == Decimal("0")
    assert status.feedback_stats.total_samples == 0
    assert not status.walker_active
    assert await _ledger(session_factory) == {}

    await engine.top_up_discovery(report.session_id, Decimal("1"))
    await finish(engine, report.session_id)

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.COMPLETE
    assert status.discovery_budget.used == Decimal("1")
    assert ("email", TODAY) in await _ledger(session_factory)


@pytest.mark.asyncio
async def test_integrity_error_outside_ledger_halts_walk(
    engine, source_client, session_factory, monkeypatch
):
    source_client.seed(EMAIL, TODAY, make_items(EMAIL, TODAY, 1))
    monkeypatch.setattr(
        "mailmine.walker.walker.create_samples",
        AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))
        ),
    )

    report = await engine.start("user-1", discovery_budget=Decimal("100"))
    assert await finish(engine, report.session_id) == WalkOutcome.PAUSED

    status = await engine.status(report.session_id)
    assert status.status == SessionStatus.PAUSED
    assert "FOREIGN KEY constraint failed" in status.reason
    assert status.discovery_budget.used == Decimal("0")
    assert await _ledger(session_factory) == {}

    [error] = await engine.list_exceptions(report.session_id)
    assert error.type == ExceptionType.ERROR
