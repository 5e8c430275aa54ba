"""Contracts for the services the discovery engine depends on.

The engine never talks to a mail provider, a model, or a messaging channel
directly. Callers supply implementations of these classes.
"""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from mailmine.errors import InvalidExtraction
from mailmine.models import ExtractionResult, ReviewException, SourceItem


class ExtractionEngine(abc.ABC):
    """Turns one source item into entities and relationships."""

    @abc.abstractmethod
    async def extract(self, item: SourceItem) -> ExtractionResult | dict[str, Any]:
        """Extract from a single item.

        May return a mapping instead of an :class:`ExtractionResult`; it is
        validated by :func:`validate_extraction` before use.

        Raises:
            ExtractionFailed: If the item could not be processed
        """


class SourceClient(abc.ABC):
    """Read access to a user's mailbox and calendar."""

    @abc.abstractmethod
    async def fetch_emails(self, start: datetime, end: datetime) -> list[SourceItem]:
        """Messages received in ``[start, end)``."""

    @abc.abstractmethod
    async def fetch_calendar_events(self, start: datetime, end: datetime) -> list[SourceItem]:
        """Events starting in ``[start, end)``."""


class Alerter(abc.ABC):
    """Pushes an exception to the user out of band."""

    @abc.abstractmethod
    async def notify(self, user_id: str, exception: ReviewException) -> bool:
        """Return True if the alert was delivered."""


class EntitySink(abc.ABC):
    """Optional store for every extraction result, reviewed or not."""

    @abc.abstractmethod
    async def save(self, user_id: str, item: SourceItem, result: ExtractionResult) -> int:
        """Store one item's extraction; return the number of records written."""


def validate_extraction(item_id: str, raw: ExtractionResult | dict[str, Any]) -> ExtractionResult:
    """Coerce an engine's output into an :class:`ExtractionResult`.

    Raises:
        InvalidExtraction: If the output does not have the expected shape
    """
    if isinstance(raw, ExtractionResult):
        result = raw
    else:
        try:
            result = ExtractionResult.model_validate(raw)
        except ValidationError as e:
            raise InvalidExtraction(item_id, e) from e

    if result.source_id is None:
        result = result.model_copy(update={"source_id": item_id})
    return result
