"""Helpers for driving background walks from tests."""

from __future__ import annotations

import asyncio
from datetime import date

from mailmine.engine import DiscoveryEngine

TIMEOUT = 5.0


async def wait_for_fetch(source_client, day: date) -> None:
    """Block until the walk is parked on the gated fetch for ``day``."""
    await asyncio.wait_for(source_client.waiting[day].wait(), TIMEOUT)


async def finish(engine: DiscoveryEngine, session_id: str):
    """Wait for the session's walk and every alert it queued."""
    outcome = await asyncio.wait_for(engine.supervisor.wait(session_id), TIMEOUT)
    await engine.dispatcher.wait_idle()
    return outcome
