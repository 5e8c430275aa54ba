"""Database layer for mailmine with async SQLAlchemy."""

from mailmine.db.connection import get_session, init_db, session_scope
from mailmine.db.models import (
    Base,
    DiscoveryProgressModel,
    DiscoverySessionModel,
    ReviewExceptionModel,
    ReviewSampleModel,
)

__all__ = [
    "Base",
    "DiscoverySessionModel",
    "DiscoveryProgressModel",
    "ReviewSampleModel",
    "ReviewExceptionModel",
    "get_session",
    "init_db",
    "session_scope",
]
