"""VibeStudy progress sync service."""
