"""Day ledger of completed (user, source, day) work."""
