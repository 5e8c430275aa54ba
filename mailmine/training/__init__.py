"""Feedback statistics and the auto-train gate."""
