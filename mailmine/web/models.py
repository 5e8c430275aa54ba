"""Request bodies for the discovery and training routes."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from mailmine.models import ExceptionStatus, SessionMode


class StartDiscoveryRequest(BaseModel):
    user_id: str = Field(min_length=1)
    discovery_budget: Decimal | None = Field(default=None, ge=0)
    training_budget: Decimal | None = Field(default=None, ge=0)
    mode: SessionMode = SessionMode.COLLECT_FEEDBACK


class TopUpRequest(BaseModel):
    amount: Decimal = Field(gt=0)


class ResolveExceptionRequest(BaseModel):
    status: ExceptionStatus = ExceptionStatus.REVIEWED
