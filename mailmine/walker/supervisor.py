"""Process-local registry of running day walks.

One asyncio task per session id. Launching a session that already has a live
task is a no-op, and any error escaping a walk pauses the session instead of
leaving it stuck in ``running``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from mailmine.walker.walker import DayWalker, WalkOutcome

logger = logging.getLogger(__name__)


@dataclass
class WalkerHandle:
    session_id: str
    task: asyncio.Task
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    # Set when a launch arrives while this walk is winding down after a stop signal
    relaunch: bool = False

    @property
    def alive(self) -> bool:
        return not self.task.done()


class WalkerSupervisor:
    def __init__(self, walker: DayWalker):
        self.walker = walker
        self._handles: dict[str, WalkerHandle] = {}

    def is_active(self, session_id: str) -> bool:
        handle = self._handles.get(session_id)
        return handle is not None and handle.alive

    def launch(self, session_id: str) -> bool:
        """Start a walk for ``session_id`` unless one is already live.

        Returns:
            True if a new walk was started or queued behind a stopping one
        """
        handle = self._handles.get(session_id)
        if handle is not None and handle.alive:
            if handle.cancel.is_set():
                handle.relaunch = True
                return True
            logger.debug("walker_already_active: session=%s", session_id)
            return False

        cancel = asyncio.Event()
        task = asyncio.create_task(self._run(session_id, cancel), name=f"walker:{session_id}")
        self._handles[session_id] = WalkerHandle(session_id=session_id, task=task, cancel=cancel)
        logger.info("walker_launched: session=%s", session_id)
        return True

    def signal_stop(self, session_id: str) -> None:
        """Ask the walk to stop at its next checkpoint."""
        handle = self._handles.get(session_id)
        if handle is not None:
            handle.cancel.set()
            handle.relaunch = False

    async def wait(self, session_id: str) -> WalkOutcome | None:
        """Await the session's current walk, if any."""
        handle = self._handles.get(session_id)
        if handle is None:
            return None
        return await handle.task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Signal every walk to stop and wait for them, cancelling stragglers."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel.set()
            handle.relaunch = False
        if not handles:
            return

        done, pending = await asyncio.wait([h.task for h in handles], timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("walkers_shut_down: stopped=%s cancelled=%s", len(done), len(pending))

    async def _run(self, session_id: str, cancel: asyncio.Event) -> WalkOutcome | None:
        outcome = None
        try:
            outcome = await self.walker.run(session_id, cancel)
            logger.info("walker_finished: session=%s outcome=%s", session_id, outcome.value)
            return outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("walker_crashed: session=%s", session_id)
            await self.walker.halt(session_id, f"Discovery stopped after an error: {e}")
            return WalkOutcome.PAUSED
        finally:
            handle = self._handles.get(session_id)
            if handle is not None and handle.cancel is cancel:
                del self._handles[session_id]
                if handle.relaunch:
                    self.launch(session_id)
