"""Discovery session lifecycle and storage."""
