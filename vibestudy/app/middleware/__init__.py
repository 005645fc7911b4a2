"""Middleware package for the sync service.

The ``rate_limit`` dependency factory is imported from
``vibestudy.app.middleware.rate_limit``; re-exporting it here would shadow
that submodule.
"""

from vibestudy.app.middleware.auth import get_optional_user, require_user
from vibestudy.app.middleware.rate_limit import RateLimitMiddleware
from vibestudy.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "get_optional_user",
    "require_user",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
