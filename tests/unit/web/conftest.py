"""Fixtures shared by the route tests."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from mailmine.models import (
    BudgetInfo,
    FeedbackStats,
    ProgressInfo,
    SessionMode,
    SessionStatus,
    SessionStatusReport,
)
from mailmine.web.app import create_app

STARTED = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)


def make_report(status: SessionStatus = SessionStatus.RUNNING, **overrides) -> SessionStatusReport:
    values = dict(
        session_id="s-1",
        user_id="user-1",
        status=status,
        mode=SessionMode.COLLECT_FEEDBACK,
        walker_active=status == SessionStatus.RUNNING,
        discovery_budget=BudgetInfo(
            total=Decimal("1000"), used=Decimal("200"), remaining=Decimal("800")
        ),
        training_budget=BudgetInfo(total=Decimal("50"), used=Decimal("0"), remaining=Decimal("50")),
        progress=ProgressInfo(days_processed=1, items_discovered=4),
        feedback_stats=FeedbackStats(total_samples=4, pending=4),
        started_at=STARTED,
    )
    values.update(overrides)
    return SessionStatusReport(**values)


@pytest.fixture
def mock_engine():
    """DiscoveryEngine stand-in; every coroutine method is an AsyncMock."""
    engine = AsyncMock()
    engine.config = MagicMock()
    engine.config.log_level = "INFO"
    engine.config.log_format = "text"
    return engine


@pytest.fixture
def client(mock_engine):
    """Test client without lifespan, so recovery and shutdown never run."""
    app = create_app(mock_engine, recover_on_startup=False, instrument=False)
    return TestClient(app)
