"""Session lifecycle rules.

    running ──pause──▶ paused ──resume──▶ running
    running ──spend──▶ budget_exhausted ──top-up──▶ running
    running ──gate───▶ training (auto_train mode only)
    training ─pause / spend─▶ paused / budget_exhausted ─resume / top-up─▶ training
    any non-terminal ──cancel / history exhausted──▶ complete

``paused`` and ``budget_exhausted`` both mean no walker is executing, but only
a top-up leaves ``budget_exhausted``. A session that entered ``training``
returns to it, not to ``running``. ``complete`` is terminal.
"""

from __future__ import annotations

from mailmine.errors import InvalidTransition
from mailmine.models import SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.PAUSED,
            SessionStatus.BUDGET_EXHAUSTED,
            SessionStatus.TRAINING,
            SessionStatus.COMPLETE,
        }
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.TRAINING, SessionStatus.COMPLETE}
    ),
    SessionStatus.BUDGET_EXHAUSTED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.TRAINING, SessionStatus.COMPLETE}
    ),
    SessionStatus.TRAINING: frozenset(
        {SessionStatus.PAUSED, SessionStatus.BUDGET_EXHAUSTED, SessionStatus.COMPLETE}
    ),
    SessionStatus.COMPLETE: frozenset(),
}

# Statuses in which the day walk may execute
WALKING_STATUSES = frozenset({SessionStatus.RUNNING, SessionStatus.TRAINING})

TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETE})


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


def sources_for(target: SessionStatus) -> frozenset[SessionStatus]:
    """All statuses from which ``target`` is reachable in one step."""
    return frozenset(status for status, targets in TRANSITIONS.items() if target in targets)


def require_transition(session_id: str, current: SessionStatus, target: SessionStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(session_id, current.value, target.value)


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


def may_walk(status: SessionStatus) -> bool:
    return status in WALKING_STATUSES
