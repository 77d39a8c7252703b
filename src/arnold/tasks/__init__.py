"""Task model and persistence."""
