"""Core utilities for the sync service."""

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
