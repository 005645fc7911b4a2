"""Services package for the sync service."""
