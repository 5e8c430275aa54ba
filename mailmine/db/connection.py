"""Async engine and session handling for mailmine.

The process-wide engine is built lazily from ``get_config().db``. Components
that own their database (the discovery engine, tests) build their own with
``build_engine`` and pass a session factory around instead.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mailmine.config import DBConfig, get_config
from mailmine.db.models import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _is_sqlite(url: str) -> bool:
    return url.lower().startswith("sqlite")


def pool_options(db: DBConfig) -> dict[str, Any]:
    """Pool arguments for ``db``; SQLite uses its own pool and takes none."""
    if _is_sqlite(db.url):
        return {}
    return {
        "pool_size": db.pool_size,
        "max_overflow": db.pool_max_overflow,
        "pool_timeout": db.pool_timeout,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def build_engine(url: str, echo: bool = False, **pool_kwargs) -> AsyncEngine:
    """Create an async engine, enabling foreign keys on SQLite.

    SQLite ignores ON DELETE clauses unless the pragma is set per connection.
    """
    engine = create_async_engine(url, echo=echo, **pool_kwargs)

    if _is_sqlite(url):

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, building it on first use."""
    global _engine

    if _engine is None:
        db = get_config().db
        _engine = build_engine(db.url, echo=db.echo, **pool_options(db))
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are mapped to pydantic views after commit
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session from ``factory`` that commits on clean exit and rolls back on error."""
    async with factory() as session:
        try:
            yield session
        except BaseException:
            await session.rollback()
            raise
        await session.commit()


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional session on the process-wide engine.

        async with get_session() as session:
            model = await load_session(session, session_id)
    """
    async with session_scope(get_session_factory()) as session:
        yield session


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables. Deployments with existing data migrate instead."""
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine; the next ``get_engine`` builds a new one."""
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
