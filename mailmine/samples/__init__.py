"""Review samples produced by discovery."""
