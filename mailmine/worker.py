import os
from typing import Any

import structlog
from arq.connections import RedisSettings
from arq.cron import cron

from mailmine.config import get_config
from mailmine.core.logging import configure_logging
from mailmine.db.connection import build_engine, make_session_factory, pool_options, session_scope
from mailmine.models import SessionStatus
from mailmine.samples.service import reconcile_counters
from mailmine.sessions.repository import list_sessions_in
from mailmine.sessions.state import is_terminal

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = [s for s in SessionStatus if not is_terminal(s)]


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)
    engine = build_engine(config.db.url, echo=config.db.echo, **pool_options(config.db))
    ctx["engine"] = engine
    ctx["session_maker"] = make_session_factory(engine)
    logger.info("worker_started")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await ctx["engine"].dispose()
    logger.info("worker_stopped")


async def reconcile_session(ctx: dict[str, Any], session_id: str) -> dict[str, Any]:
    """Recompute one session's counters from its rows."""
    async with session_scope(ctx["session_maker"]) as session:
        model = await reconcile_counters(session, session_id)
        return {
            "session_id": model.id,
            "samples_collected": model.samples_collected,
            "feedback_received": model.feedback_received,
            "exceptions_count": model.exceptions_count,
            "accuracy": model.accuracy,
        }


async def reconcile_active_sessions(ctx: dict[str, Any]) -> dict[str, Any]:
    """Reconcile every session that has not completed."""
    async with session_scope(ctx["session_maker"]) as session:
        session_ids = [m.id for m in await list_sessions_in(session, ACTIVE_STATUSES)]

    for session_id in session_ids:
        await reconcile_session(ctx, session_id)

    logger.info("active_sessions_reconciled", count=len(session_ids))
    return {"reconciled": len(session_ids)}


class WorkerSettings:
    functions = [reconcile_session, reconcile_active_sessions]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(
        os.environ.get("REDIS_URL", "redis://localhost:6379")
    )
    cron_jobs = [cron(reconcile_active_sessions, minute=0)]
