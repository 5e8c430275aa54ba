"""Tests for the mailmine CLI against a throwaway SQLite database."""

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from typer.testing import CliRunner

from mailmine.cli import app
from mailmine.config import reset_config
from mailmine.db.connection import build_engine, session_scope
from mailmine.escalation.service import record_exception
from mailmine.models import (
    Entity,
    ExceptionItem,
    ExceptionSeverity,
    ExceptionType,
    ExtractionResult,
    SourceType,
)
from mailmine.samples.service import create_samples
from mailmine.sessions.repository import create_session, set_counters

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    reset_config()
    yield url
    reset_config()


def _seed(url: str) -> tuple[str, str]:
    async def _run():
        engine = build_engine(url)
        try:
            async with session_scope(async_sessionmaker(engine, expire_on_commit=False)) as db:
                model = await create_session(db, "user-1", Decimal("100"), Decimal("10"))
                result = ExtractionResult(
                    entities=[Entity(value="Alice", type="person", confidence=0.9)]
                )
                await create_samples(db, model.id, result, SourceType.EMAIL, date(2026, 3, 15))
                await set_counters(db, model.id, accuracy=0.0, samples_collected=9)
                exception = await record_exception(
                    db,
                    model.id,
                    "user-1",
                    ExceptionType.LOW_CONFIDENCE,
                    ExceptionSeverity.HIGH,
                    "Prediction 'person' has 20% confidence",
                    ExceptionItem(content="Alice"),
                )
                return model.id, exception.id
        finally:
            await engine.dispose()

    return asyncio.run(_run())


def _init() -> None:
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output


def test_init_creates_tables(cli_db):
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0
    assert "Database initialized" in result.output


def test_sessions_empty(cli_db):
    _init()

    result = runner.invoke(app, ["sessions", "nobody"])

    assert result.exit_code == 0
    assert "No sessions for nobody" in result.output


def test_status_and_reconcile(cli_db):
    _init()
    session_id, _ = _seed(cli_db)

    status = runner.invoke(app, ["status", session_id])
    assert status.exit_code == 0, status.output
    assert "running" in status.output

    reconciled = runner.invoke(app, ["reconcile", session_id])
    assert reconciled.exit_code == 0, reconciled.output
    assert "samples=1" in reconciled.output
    assert "exceptions=1" in reconciled.output


def test_unknown_session_exits_with_error(cli_db):
    _init()

    result = runner.invoke(app, ["status", "missing"])

    assert result.exit_code == 1
    assert "Error:" in result.output


def test_resolve_exception(cli_db):
    _init()
    session_id, exception_id = _seed(cli_db)

    listed = runner.invoke(app, ["exceptions", session_id, "--pending"])
    assert listed.exit_code == 0, listed.output
    assert "Exceptions for" in listed.output

    resolved = runner.invoke(app, ["resolve", exception_id, "--dismiss"])
    assert resolved.exit_code == 0, resolved.output
    assert "dismissed" in resolved.output
