"""Pytest configuration and fixtures for mailmine tests.

Provides a file-backed SQLite database per test, fake collaborators and a
fixed clock for the day walk.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailmine.collaborators import Alerter, EntitySink, ExtractionEngine, SourceClient
from mailmine.config import AppConfig, DBConfig, DiscoveryConfig, TrainingConfig, reset_config
from mailmine.db.connection import build_engine, init_db
from mailmine.engine import DiscoveryEngine
from mailmine.errors import ExtractionFailed
from mailmine.models import Entity, ExtractionResult, ReviewException, SourceItem, SourceType

TODAY = date(2026, 3, 15)


def make_items(
    source: SourceType,
    day: date,
    count: int,
    cost: Decimal | int | str = "1",
    confidence: float = 0.9,
) -> list[SourceItem]:
    """Build ``count`` source items for ``day`` that extract to one entity each."""
    return [
        SourceItem(
            id=f"{source.value}-{day.isoformat()}-{i}",
            source_type=source,
            text=f"Message {i} from {day.isoformat()}",
            occurred_at=datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc),
            attributes={"cost": str(cost), "confidence": confidence},
        )
        for i in range(count)
    ]


class FakeSourceClient(SourceClient):
    """Serves pre-seeded items per (source, day).

    ``failures`` makes the first N calls for a source raise. ``gates`` holds
    a fetch for a given day until the event is set.
    """

    def __init__(self):
        self.items: dict[tuple[SourceType, date], list[SourceItem]] = {}
        self.failures: dict[SourceType, int] = {}
        self.gates: dict[date, asyncio.Event] = {}
        self.waiting: dict[date, asyncio.Event] = {}
        self.calls: list[tuple[SourceType, date]] = []

    def seed(self, source: SourceType, day: date, items: list[SourceItem]) -> None:
        self.items[(source, day)] = items

    def gate(self, day: date) -> asyncio.Event:
        self.gates[day] = asyncio.Event()
        self.waiting[day] = asyncio.Event()
        return self.gates[day]

    async def _fetch(self, source: SourceType, start: datetime) -> list[SourceItem]:
        day = start.date()
        self.calls.append((source, day))
        if self.failures.get(source, 0) > 0:
            self.failures[source] -= 1
            raise ConnectionError(f"{source.value} provider unavailable")
        if day in self.gates:
            self.waiting[day].set()
            await self.gates[day].wait()
        return list(self.items.get((source, day), []))

    async def fetch_emails(self, start, end):
        return await self._fetch(SourceType.EMAIL, start)

    async def fetch_calendar_events(self, start, end):
        return await self._fetch(SourceType.CALENDAR, start)


class FakeExtractionEngine(ExtractionEngine):
    """Extracts one entity per item; cost and confidence come from the item."""

    def __init__(self):
        self.fail_ids: set[str] = set()
        self.crash_ids: set[str] = set()
        self.extracted: list[str] = []

    async def extract(self, item: SourceItem):
        if item.id in self.crash_ids:
            raise RuntimeError(f"model backend crashed on {item.id}")
        if item.id in self.fail_ids:
            raise ExtractionFailed(item.id)
        self.extracted.append(item.id)
        return ExtractionResult(
            entities=[
                Entity(
                    value=f"Person {item.id}",
                    type="person",
                    confidence=item.attributes.get("confidence", 0.9),
                )
            ],
            cost_estimate=Decimal(item.attributes.get("cost", "1")),
            source_id=item.id,
        )


class RecordingAlerter(Alerter):
    def __init__(self, result: bool = True, error: Exception | None = None):
        self.result = result
        self.error = error
        self.sent: list[tuple[str, ReviewException]] = []

    async def notify(self, user_id: str, exception: ReviewException) -> bool:
        if self.error:
            raise self.error
        self.sent.append((user_id, exception))
        return self.result


class RecordingSink(EntitySink):
    def __init__(self):
        self.saved: list[str] = []

    async def save(self, user_id, item, result) -> int:
        self.saved.append(item.id)
        return len(result.entities)


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'mailmine.db'}"


@pytest_asyncio.fixture()
async def db_engine(db_url):
    engine = build_engine(db_url)
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory) -> AsyncSession:
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def config(db_url) -> AppConfig:
    return AppConfig(
        db=DBConfig(url=db_url),
        discovery=DiscoveryConfig(history_days=3, fetch_retry_wait_seconds=0),
        training=TrainingConfig(min_feedback_for_auto_train=3),
    )


@pytest.fixture
def source_client() -> FakeSourceClient:
    return FakeSourceClient()


@pytest.fixture
def extraction_engine() -> FakeExtractionEngine:
    return FakeExtractionEngine()


@pytest.fixture
def alerter() -> RecordingAlerter:
    return RecordingAlerter()


@pytest_asyncio.fixture()
async def engine(session_factory, config, source_client, extraction_engine, alerter):
    discovery = DiscoveryEngine(
        source_client,
        extraction_engine,
        config=config,
        session_factory=session_factory,
        alerter=alerter,
        clock=lambda: TODAY,
    )
    try:
        yield discovery
    finally:
        await discovery.shutdown()
