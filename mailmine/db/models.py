"""SQLAlchemy async database models for mailmine.

Maps to the PostgreSQL schema (SQLite in tests). Budget columns hold cents.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


Money = Numeric(14, 4)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DiscoverySessionModel(Base):
    """One discovery/training session; at most one active per user."""

    __tablename__ = "discovery_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="running", index=True)
    status_reason: Mapped[str | None] = mapped_column(Text)
    mode: Mapped[str] = mapped_column(Text, nullable=False, default="collect_feedback")

    # Independent budgets (cents); `used` only ever grows
    discovery_budget_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    discovery_budget_used: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    training_budget_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    training_budget_used: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    # Aggregate counters, kept in step with review_samples / review_exceptions
    samples_collected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    feedback_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exceptions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # First entry into training; resume and top-up return to training once set
    training_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "discovery_budget_used >= 0 AND discovery_budget_used <= discovery_budget_total",
            name="check_discovery_budget_within_total",
        ),
        CheckConstraint(
            "training_budget_used >= 0 AND training_budget_used <= training_budget_total",
            name="check_training_budget_within_total",
        ),
        CheckConstraint(
            "accuracy >= 0 AND accuracy <= 100", name="check_accuracy_percentage"
        ),
        # Single active session per user
        Index(
            "uq_discovery_sessions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("completed_at IS NULL"),
            postgresql_where=text("completed_at IS NULL"),
        ),
        Index("idx_discovery_sessions_user_created", "user_id", "created_at"),
    )


class DiscoveryProgressModel(Base):
    """Day ledger row: one (user, source, calendar day) unit of completed work."""

    __tablename__ = "discovery_progress"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("discovery_sessions.id", ondelete="SET NULL"), index=True
    )
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    processed_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    items_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_covered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "source_type", "processed_date", name="uq_progress_user_source_date"
        ),
    )


class ReviewSampleModel(Base):
    """An extracted entity or relationship awaiting (or holding) human feedback."""

    __tablename__ = "review_samples"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="entity", index=True)

    content_text: Mapped[str] = mapped_column(Text, nullable=False)
    content_context: Mapped[str | None] = mapped_column(Text)
    source_id: Mapped[str | None] = mapped_column(Text)
    source_type: Mapped[str | None] = mapped_column(Text)
    source_date: Mapped[date | None] = mapped_column(Date)

    prediction_label: Mapped[str] = mapped_column(Text, nullable=False)
    prediction_confidence: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    prediction_reasoning: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", index=True)
    feedback_is_correct: Mapped[bool | None] = mapped_column(Boolean)
    feedback_corrected_label: Mapped[str | None] = mapped_column(Text)
    feedback_notes: Mapped[str | None] = mapped_column(Text)
    feedback_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "prediction_confidence >= 0 AND prediction_confidence <= 100",
            name="check_prediction_confidence",
        ),
        Index("idx_review_samples_session_status_ordinal", "session_id", "status", "ordinal"),
    )


class ReviewExceptionModel(Base):
    """Anomaly flagged during processing or review.

    ``sample_id`` is a weak reference (no foreign key); the flagged content is
    copied onto the row.
    """

    __tablename__ = "review_exceptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    severity: Mapped[str] = mapped_column(Text, nullable=False, default="medium")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    sample_id: Mapped[str | None] = mapped_column(String(36))
    item_content: Mapped[str] = mapped_column(Text, nullable=False)
    item_context: Mapped[str | None] = mapped_column(Text)

    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
