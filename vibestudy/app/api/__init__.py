"""API endpoints package for the sync service."""

from vibestudy.app.api.progress import router as progress_router

__all__ = ["progress_router"]
