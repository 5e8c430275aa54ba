"""Tests for the arq background jobs."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from mailmine.models import Entity, ExtractionResult, SessionStatus, SourceType
from mailmine.samples.service import create_samples
from mailmine.sessions.repository import create_session, load_session, set_counters, transition
from mailmine.worker import WorkerSettings, reconcile_active_sessions, reconcile_session


async def _drifted_session(session_factory, user_id: str, status: SessionStatus | None = None):
    async with session_factory() as session:
        model = await create_session(session, user_id, Decimal("100"), Decimal("10"))
        result = ExtractionResult(
            entities=[Entity(value="Alice", type="person", confidence=0.9)]
        )
        await create_samples(session, model.id, result, SourceType.EMAIL, date(2026, 3, 15))
        await set_counters(session, model.id, accuracy=12.5, samples_collected=40)
        if status:
            await transition(session, model.id, status)
        await session.commit()
        return model.id


@pytest.mark.asyncio
async def test_reconcile_session(session_factory):
    session_id = await _drifted_session(session_factory, "user-1")

    summary = await reconcile_session({"session_maker": session_factory}, session_id)

    assert summary == {
        "session_id": session_id,
        "samples_collected": 1,
        "feedback_received": 0,
        "exceptions_count": 0,
        "accuracy": 0.0,
    }


@pytest.mark.asyncio
async def test_reconcile_active_sessions_skips_completed(session_factory):
    running = await _drifted_session(session_factory, "user-1")
    paused = await _drifted_session(session_factory, "user-2", SessionStatus.PAUSED)
    done = await _drifted_session(session_factory, "user-3", SessionStatus.COMPLETE)

    result = await reconcile_active_sessions({"session_maker": session_factory})

    assert result == {"reconciled": 2}
    async with session_factory() as session:
        assert (await load_session(session, running)).samples_collected == 1
        assert (await load_session(session, paused)).samples_collected == 1
        assert (await load_session(session, done)).samples_collected == 40


def test_worker_settings_schedule_reconciliation():
    assert reconcile_active_sessions in WorkerSettings.functions
    assert len(WorkerSettings.cron_jobs) == 1
