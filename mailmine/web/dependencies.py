"""Shared dependencies for mailmine web routes.

Usage:
    from fastapi import Depends
    from mailmine.web.dependencies import get_discovery_engine

    @router.get("/discover/{session_id}/status")
    async def status(session_id: str, engine = Depends(get_discovery_engine)):
        return await engine.status(session_id)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from mailmine.db.connection import session_scope
from mailmine.engine import DiscoveryEngine


def get_discovery_engine(request: Request) -> DiscoveryEngine:
    """Return the engine attached to the application by ``create_app``."""
    return request.app.state.engine


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session from the engine's session factory."""
    engine = get_discovery_engine(request)
    async with session_scope(engine.session_factory) as session:
        yield session
