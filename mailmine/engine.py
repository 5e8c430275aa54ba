"""DiscoveryEngine: the operations exposed to the API, CLI and worker.

Every method opens its own short transaction. Walks run on background tasks
owned by a :class:`WalkerSupervisor`; the engine only launches and signals
them.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Awaitable, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailmine.budget.accountant import BudgetAccountant, BudgetKind, top_up_session
from mailmine.collaborators import Alerter, EntitySink, ExtractionEngine, SourceClient
from mailmine.config import AppConfig, get_config
from mailmine.db.connection import get_session_factory, session_scope
from mailmine.errors import InvalidTransition, NoActiveWalker
from mailmine.escalation import service as escalation
from mailmine.ledger.repository import list_progress, session_progress
from mailmine.models import (
    BudgetInfo,
    DiscoverySession,
    ExceptionStatus,
    FeedbackSubmission,
    ProgressEntry,
    ReviewException,
    Sample,
    SampleFilters,
    SamplePage,
    SessionMode,
    SessionStatus,
    SessionStatusReport,
)
from mailmine.samples import service as samples
from mailmine.sessions.repository import (
    create_session,
    fetch_active_session,
    list_sessions,
    list_sessions_in,
    load_session,
    to_session,
    transition,
)
from mailmine.sessions.state import WALKING_STATUSES, may_walk, require_transition
from mailmine.training.gate import feedback_stats, maybe_start_training, resume_status
from mailmine.walker.supervisor import WalkerSupervisor
from mailmine.walker.walker import DayWalker, utc_today

logger = logging.getLogger(__name__)

TrainingHook = Callable[[DiscoverySession], Awaitable[None]]


class DiscoveryEngine:
    def __init__(
        self,
        source_client: SourceClient,
        extraction_engine: ExtractionEngine,
        *,
        config: AppConfig | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        alerter: Alerter | None = None,
        entity_sink: EntitySink | None = None,
        on_training: TrainingHook | None = None,
        clock=utc_today,
    ):
        self.config = config or get_config()
        self.session_factory = session_factory or get_session_factory()
        self.accountant = BudgetAccountant()
        self.dispatcher = escalation.AlertDispatcher(alerter, self.session_factory)
        self.walker = DayWalker(
            self.session_factory,
            source_client,
            extraction_engine,
            self.config,
            accountant=self.accountant,
            dispatcher=self.dispatcher,
            entity_sink=entity_sink,
            clock=clock,
        )
        self.supervisor = WalkerSupervisor(self.walker)
        self.on_training = on_training

    def _session(self):
        return session_scope(self.session_factory)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        user_id: str,
        discovery_budget: Decimal | None = None,
        training_budget: Decimal | None = None,
        mode: SessionMode = SessionMode.COLLECT_FEEDBACK,
    ) -> SessionStatusReport:
        """Create a session for ``user_id`` and launch its walk.

        If the user already has an active session it is returned unchanged;
        a running session without a live walk gets one.
        """
        discovery_budget = (
            self.config.discovery.default_discovery_budget
            if discovery_budget is None
            else Decimal(discovery_budget)
        )
        training_budget = (
            self.config.discovery.default_training_budget
            if training_budget is None
            else Decimal(training_budget)
        )
        if discovery_budget < 0 or training_budget < 0:
            raise ValueError("budgets must be non-negative")

        try:
            async with self._session() as db:
                model = await fetch_active_session(db, user_id)
                if model is None:
                    model = await create_session(
                        db, user_id, discovery_budget, training_budget, mode
                    )
                    logger.info("session_created: session=%s user=%s", model.id, user_id)
                session_id, status = model.id, SessionStatus(model.status)
        except IntegrityError:
            # A concurrent start created the session first
            async with self._session() as db:
                model = await fetch_active_session(db, user_id)
                if model is None:
                    raise
                session_id, status = model.id, SessionStatus(model.status)

        if may_walk(status):
            self.supervisor.launch(session_id)
        return await self.status(session_id)

    async def pause(self, session_id: str) -> SessionStatusReport:
        async with self._session() as db:
            model = await load_session(db, session_id)
            moved = await transition(
                db,
                session_id,
                SessionStatus.PAUSED,
                reason="Paused by user",
                allowed_from=WALKING_STATUSES,
            )
            if not moved:
                current = (await load_session(db, session_id)).status
                if current != SessionStatus.PAUSED.value:
                    raise InvalidTransition(session_id, current, SessionStatus.PAUSED.value)

        self.supervisor.signal_stop(session_id)
        logger.info("session_paused: session=%s user=%s", session_id, model.user_id)
        return await self.status(session_id)

    async def resume(self, session_id: str) -> SessionStatusReport:
        """Continue a paused session, or re-attach a walk to a running one.

        Raises:
            NoActiveWalker: The session is complete or waiting on a top-up
        """
        entered_training = None
        async with self._session() as db:
            model = await load_session(db, session_id)
            status = SessionStatus(model.status)

            if status == SessionStatus.COMPLETE:
                raise NoActiveWalker(session_id, "session is complete")
            if status == SessionStatus.BUDGET_EXHAUSTED:
                raise NoActiveWalker(
                    session_id, "discovery budget exhausted; top up the budget to continue"
                )
            if status == SessionStatus.PAUSED:
                target = resume_status(model)
                require_transition(session_id, status, target)
                moved = await transition(
                    db, session_id, target, allowed_from={SessionStatus.PAUSED}
                )
                if not moved:
                    current = (await load_session(db, session_id)).status
                    raise InvalidTransition(session_id, current, target.value)
                entered_training = await self._recheck_gate(db, session_id)

        self.supervisor.launch(session_id)
        logger.info("session_resumed: session=%s", session_id)
        if entered_training is not None:
            await self._run_training_hook(entered_training)
        return await self.status(session_id)

    async def cancel(self, session_id: str) -> SessionStatusReport:
        """Complete the session. Irreversible; cancelling twice is a no-op."""
        async with self._session() as db:
            await load_session(db, session_id)
            moved = await transition(
                db, session_id, SessionStatus.COMPLETE, reason="Cancelled by user"
            )

        self.supervisor.signal_stop(session_id)
        self.accountant.forget(session_id)
        if moved:
            logger.info("session_cancelled: session=%s", session_id)
        return await self.status(session_id)

    async def top_up_discovery(self, session_id: str, amount: Decimal) -> SessionStatusReport:
        """Raise the discovery budget; an exhausted session goes back to running."""
        amount = Decimal(amount)
        entered_training = None
        async with self._session() as db:
            model = await load_session(db, session_id)
            await top_up_session(db, session_id, BudgetKind.DISCOVERY, amount)
            restarted = await transition(
                db,
                session_id,
                resume_status(model),
                reason=f"Discovery budget topped up by {amount}",
                allowed_from={SessionStatus.BUDGET_EXHAUSTED},
            )
            if restarted:
                entered_training = await self._recheck_gate(db, session_id)
            status = SessionStatus((await load_session(db, session_id)).status)

        if may_walk(status):
            self.supervisor.launch(session_id)
        logger.info("discovery_budget_topped_up: session=%s amount=%s", session_id, amount)
        if entered_training is not None:
            await self._run_training_hook(entered_training)
        return await self.status(session_id)

    async def _recheck_gate(self, db: AsyncSession, session_id: str) -> DiscoverySession | None:
        """Apply the auto-train gate to feedback that arrived while the walk was stopped."""
        threshold = self.config.training.min_feedback_for_auto_train
        if not await maybe_start_training(db, session_id, threshold):
            return None
        return to_session(await load_session(db, session_id))

    async def top_up_training(self, session_id: str, amount: Decimal) -> SessionStatusReport:
        amount = Decimal(amount)
        async with self._session() as db:
            await load_session(db, session_id)
            await top_up_session(db, session_id, BudgetKind.TRAINING, amount)
        logger.info("training_budget_topped_up: session=%s amount=%s", session_id, amount)
        return await self.status(session_id)

    async def recover(self) -> list[str]:
        """Relaunch walks for sessions left running by a previous process."""
        async with self._session() as db:
            models = await list_sessions_in(db, WALKING_STATUSES)

        launched = []
        for model in models:
            if not self.supervisor.is_active(model.id) and self.supervisor.launch(model.id):
                launched.append(model.id)
        if launched:
            logger.info("walkers_recovered: count=%s", len(launched))
        return launched

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()
        await self.dispatcher.wait_idle()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> DiscoverySession:
        async with self._session() as db:
            return to_session(await load_session(db, session_id))

    async def list_sessions(self, user_id: str) -> list[DiscoverySession]:
        async with self._session() as db:
            return [to_session(m) for m in await list_sessions(db, user_id)]

    async def status(self, session_id: str) -> SessionStatusReport:
        threshold = self.config.training.min_feedback_for_auto_train
        async with self._session() as db:
            session = to_session(await load_session(db, session_id))
            progress = await session_progress(db, session_id)
            stats = await feedback_stats(db, session_id, threshold)

        return SessionStatusReport(
            session_id=session.id,
            user_id=session.user_id,
            status=session.status,
            reason=session.status_reason,
            mode=session.mode,
            walker_active=self.supervisor.is_active(session_id),
            discovery_budget=BudgetInfo.from_budget(session.discovery_budget),
            training_budget=BudgetInfo.from_budget(session.training_budget),
            progress=progress,
            feedback_stats=stats,
            exceptions_count=session.exceptions_count,
            accuracy=session.accuracy,
            started_at=session.created_at,
            completed_at=session.completed_at,
        )

    async def list_progress(
        self, user_id: str, session_id: str | None = None
    ) -> list[ProgressEntry]:
        async with self._session() as db:
            return await list_progress(db, user_id, session_id)

    async def list_samples(
        self, session_id: str, filters: SampleFilters | None = None
    ) -> SamplePage:
        async with self._session() as db:
            await load_session(db, session_id)
            return await samples.list_samples(db, session_id, filters)

    async def next_sample(self, session_id: str) -> Sample | None:
        async with self._session() as db:
            await load_session(db, session_id)
            return await samples.next_pending(db, session_id)

    async def uncertain_samples(
        self, session_id: str, limit: int = 10, max_confidence: int | None = None
    ) -> list[Sample]:
        if max_confidence is None:
            max_confidence = self.config.training.uncertain_confidence_ceiling
        async with self._session() as db:
            await load_session(db, session_id)
            return await samples.uncertain_samples(db, session_id, limit, max_confidence)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def submit_feedback(self, sample_id: str, submission: FeedbackSubmission) -> Sample:
        """Review a sample, charging the training budget.

        Raises:
            SampleNotFound, AlreadyReviewed, TrainingBudgetExhausted
        """
        threshold = self.config.training.min_feedback_for_auto_train
        async with self._session() as db:
            sample, conflict = await samples.submit_feedback(
                db, sample_id, submission, self.config.training.feedback_cost
            )
            entered_training = await maybe_start_training(db, sample.session_id, threshold)
            session = to_session(await load_session(db, sample.session_id))

        if conflict is not None:
            self.dispatcher.dispatch([conflict])
        if entered_training:
            await self._run_training_hook(session)
        return sample

    async def skip(self, sample_id: str) -> Sample:
        async with self._session() as db:
            return await samples.skip(db, sample_id)

    async def _run_training_hook(self, session: DiscoverySession) -> None:
        if self.on_training is None:
            return
        try:
            await self.on_training(session)
        except Exception:
            logger.exception("training_hook_failed: session=%s", session.id)

    # ------------------------------------------------------------------
    # Exceptions and maintenance
    # ------------------------------------------------------------------

    async def list_exceptions(
        self, session_id: str, status: ExceptionStatus | None = None
    ) -> list[ReviewException]:
        async with self._session() as db:
            await load_session(db, session_id)
            return await escalation.list_exceptions(db, session_id, status)

    async def resolve_exception(
        self, exception_id: str, status: ExceptionStatus
    ) -> ReviewException:
        async with self._session() as db:
            return await escalation.resolve_exception(db, exception_id, status)

    async def reconcile_counters(self, session_id: str) -> DiscoverySession:
        async with self._session() as db:
            return to_session(await samples.reconcile_counters(db, session_id))
