"""mailmine - autonomous entity discovery and feedback training over mail and calendar history."""

__version__ = "1.0.0"
