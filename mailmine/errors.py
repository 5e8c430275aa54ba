"""Domain error taxonomy for discovery and training.

Every error carries a short machine code so the web layer can map it to a
response without string matching.
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for all mailmine domain errors."""

    code = "discovery_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class SessionNotFound(DiscoveryError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SampleNotFound(DiscoveryError):
    code = "sample_not_found"

    def __init__(self, sample_id: str):
        super().__init__(f"Sample {sample_id} not found")
        self.sample_id = sample_id


class ExceptionNotFound(DiscoveryError):
    code = "exception_not_found"

    def __init__(self, exception_id: str):
        super().__init__(f"Exception {exception_id} not found")
        self.exception_id = exception_id


class AlreadyReviewed(DiscoveryError):
    """Second feedback submission (or skip) on a sample that is no longer pending."""

    code = "already_reviewed"

    def __init__(self, sample_id: str, status: str):
        super().__init__(f"Sample {sample_id} is already {status}")
        self.sample_id = sample_id
        self.status = status


class InvalidTransition(DiscoveryError):
    code = "invalid_transition"

    def __init__(self, session_id: str, current: str, target: str):
        super().__init__(f"Session {session_id} cannot move from {current} to {target}")
        self.session_id = session_id
        self.current = current
        self.target = target


class NoActiveWalker(DiscoveryError):
    """Resume requested on a session that has no discovery work left to do."""

    code = "no_active_walker"

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Session {session_id} has nothing to resume: {reason}")
        self.session_id = session_id


class BudgetExhausted(DiscoveryError):
    """Remaining budget cannot cover the requested cost.

    For discovery this is an expected condition: the walker turns it into a
    ``budget_exhausted`` status instead of raising it to callers.
    """

    code = "budget_exhausted"

    def __init__(self, budget: str, remaining, cost):
        super().__init__(f"{budget} budget has {remaining} remaining, {cost} required")
        self.budget = budget
        self.remaining = remaining
        self.cost = cost


class TrainingBudgetExhausted(BudgetExhausted):
    code = "training_budget_exhausted"

    def __init__(self, remaining, cost):
        super().__init__("training", remaining, cost)


class SourceFetchFailed(DiscoveryError):
    """Transient failure fetching mail or calendar items for a day."""

    code = "source_fetch_failed"

    def __init__(self, source_type: str, day, cause: Exception | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Fetching {source_type} items for {day} failed{detail}")
        self.source_type = source_type
        self.day = day
        self.cause = cause


class ExtractionFailed(DiscoveryError):
    """Extraction of a single source item failed; the item is skipped."""

    code = "extraction_failed"

    def __init__(self, item_id: str, cause: Exception | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Extraction failed for item {item_id}{detail}")
        self.item_id = item_id
        self.cause = cause


class InvalidExtraction(ExtractionFailed):
    """Extraction output did not match the expected result shape."""

    code = "invalid_extraction"
