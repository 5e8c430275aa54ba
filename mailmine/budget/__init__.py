"""Discovery and training budget accounting."""
