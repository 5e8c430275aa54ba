"""mailmine API route modules.

Each module exports a ``router`` (APIRouter instance) that ``create_app``
includes.
"""

from mailmine.web.routes import discovery, health, training

__all__ = ["discovery", "health", "training"]
