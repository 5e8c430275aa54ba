"""HTTP API for discovery sessions and review."""
