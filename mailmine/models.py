"""mailmine Pydantic models for type-safe data validation.

These are the shapes that cross module boundaries: collaborator inputs and
outputs, the session/sample/exception views handed to callers, and the status
report consumed by the API layer. ORM rows never leave the repositories.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class SessionStatus(str, Enum):
    """Lifecycle states of a discovery session."""

    RUNNING = "running"
    PAUSED = "paused"
    BUDGET_EXHAUSTED = "budget_exhausted"
    TRAINING = "training"  # auto-train phase, entered through the gate hook
    COMPLETE = "complete"


class SessionMode(str, Enum):
    COLLECT_FEEDBACK = "collect_feedback"
    AUTO_TRAIN = "auto_train"


class SourceType(str, Enum):
    EMAIL = "email"
    CALENDAR = "calendar"


class SampleType(str, Enum):
    ENTITY = "entity"
    RELATIONSHIP = "relationship"


class SampleStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    SKIPPED = "skipped"


class ExceptionType(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    CONFLICTING_LABELS = "conflicting_labels"
    NOVEL_PATTERN = "novel_pattern"
    ERROR = "error"


class ExceptionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExceptionStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


class Budget(BaseModel):
    """A total/used counter pair in cents."""

    total: Decimal = Decimal("0")
    used: Decimal = Decimal("0")

    @field_validator("total", "used")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("budget amounts must be non-negative")
        return v

    @property
    def remaining(self) -> Decimal:
        return self.total - self.used


class BudgetInfo(BaseModel):
    total: Decimal
    used: Decimal
    remaining: Decimal

    @classmethod
    def from_budget(cls, budget: Budget) -> BudgetInfo:
        return cls(total=budget.total, used=budget.used, remaining=budget.remaining)


# ---------------------------------------------------------------------------
# Collaborator boundary
# ---------------------------------------------------------------------------


class SourceItem(BaseModel):
    """A single mail message or calendar event fetched for a day."""

    id: str
    source_type: SourceType
    text: str = ""
    title: str | None = None
    occurred_at: datetime | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class Entity(BaseModel):
    value: str
    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    context: str | None = None


class Relationship(BaseModel):
    from_value: str
    from_type: str
    to_value: str
    to_type: str
    relationship_type: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str | None = None


class ExtractionResult(BaseModel):
    """Validated output of the extraction engine for one source item.

    ``cost_estimate`` is the discovery cost in cents incurred by extracting
    the item.
    """

    entities: list[Entity] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    cost_estimate: Decimal = Decimal("0")
    source_id: str | None = None

    @field_validator("cost_estimate")
    @classmethod
    def validate_cost(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("cost_estimate must be non-negative")
        return v

    @property
    def item_count(self) -> int:
        return len(self.entities) + len(self.relationships)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class DiscoverySession(BaseModel):
    id: str
    user_id: str
    status: SessionStatus
    status_reason: str | None = None
    mode: SessionMode
    discovery_budget: Budget
    training_budget: Budget
    samples_collected: int = 0
    feedback_received: int = 0
    exceptions_count: int = 0
    accuracy: float = 0.0
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    training_started_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------


class SampleContent(BaseModel):
    text: str
    context: str | None = None
    source_id: str | None = None
    source_type: SourceType | None = None
    source_date: date | None = None


class Prediction(BaseModel):
    label: str
    confidence: int = Field(ge=0, le=100)
    reasoning: str | None = None


class Feedback(BaseModel):
    is_correct: bool
    corrected_label: str | None = None
    notes: str | None = None
    feedback_at: datetime


class Sample(BaseModel):
    id: str
    session_id: str
    type: SampleType
    content: SampleContent
    prediction: Prediction
    status: SampleStatus
    feedback: Feedback | None = None
    created_at: datetime


class FeedbackSubmission(BaseModel):
    is_correct: bool
    corrected_label: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def strip_blank_label(self) -> FeedbackSubmission:
        if self.corrected_label is not None and not self.corrected_label.strip():
            self.corrected_label = None
        return self


class SampleFilters(BaseModel):
    status: SampleStatus | None = None
    type: SampleType | None = None
    source_type: SourceType | None = None
    max_confidence: int | None = Field(default=None, ge=0, le=100)
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class SamplePage(BaseModel):
    items: list[Sample]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ExceptionItem(BaseModel):
    """Copy of the flagged item; survives deletion of the referenced sample."""

    sample_id: str | None = None
    content: str
    context: str | None = None


class ReviewException(BaseModel):
    id: str
    session_id: str
    user_id: str
    type: ExceptionType
    severity: ExceptionSeverity
    status: ExceptionStatus
    reason: str
    item: ExceptionItem
    notified_at: datetime | None = None
    reviewed_at: datetime | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Ledger and reporting
# ---------------------------------------------------------------------------


class ProgressEntry(BaseModel):
    id: str
    user_id: str
    session_id: str | None
    source_type: SourceType
    processed_date: date
    items_found: int
    processed_at: datetime


class ProgressInfo(BaseModel):
    days_processed: int = 0
    items_discovered: int = 0


class TypeStats(BaseModel):
    total: int = 0
    reviewed: int = 0
    correct: int = 0
    accuracy: float = 0.0


class FeedbackStats(BaseModel):
    total_samples: int = 0
    pending: int = 0
    reviewed: int = 0
    skipped: int = 0
    correct: int = 0
    accuracy: float = 0.0
    auto_train_ready: bool = False
    min_feedback_for_auto_train: int = 50
    by_type: dict[SampleType, TypeStats] = Field(default_factory=dict)


class SessionStatusReport(BaseModel):
    session_id: str
    user_id: str
    status: SessionStatus
    reason: str | None = None
    mode: SessionMode
    walker_active: bool = False
    discovery_budget: BudgetInfo
    training_budget: BudgetInfo
    progress: ProgressInfo
    feedback_stats: FeedbackStats
    exceptions_count: int = 0
    accuracy: float = 0.0
    started_at: datetime
    completed_at: datetime | None = None
