"""Custom exceptions for the sync service."""

from typing import Any, Optional


class VibeStudyException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "VibeStudy error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class RateLimitConfigError(VibeStudyException):
    """Raised when a rate limit policy is malformed.

    Only raised while building policies, never while evaluating requests.
    """
    status_code = 500
    error_code = "rate_limit_misconfigured"


class RateLimitExceededError(VibeStudyException):
    """Raised when a caller has exhausted its bucket for the current window.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        result: Any,
        headers: Optional[dict[str, str]] = None,
        detail: str = "Rate limit exceeded. Please try again later.",
    ):
        self.result = result
        self.headers = headers or {}
        self.retry_after = getattr(result, "retry_after", None)
        super().__init__(detail)

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "retry_after": self.retry_after,
        }


class AuthenticationError(VibeStudyException):
    """Raised when a request needs a signed-in learner and has none.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error_code = "authentication_failed"

    def __init__(self, detail: str = "Invalid or missing access token"):
        self.detail = detail
        super().__init__(detail)


class ProgressStoreError(VibeStudyException):
    """Raised by a progress store for a backend failure worth retrying."""
    status_code = 503
    error_code = "progress_store_unavailable"


class SyncShutdownError(VibeStudyException):
    """Raised when a sync write is issued after the manager shut down."""
    status_code = 503
    error_code = "sync_unavailable"

    def __init__(self, message: str = "Progress sync is shutting down"):
        super().__init__(message)


class AuthServiceUnavailableError(VibeStudyException):
    """Raised when the auth server cannot say who the caller is.

    Distinct from a rejected token: the learner may well be signed in, so
    their writes must not be treated as local-only. Maps to HTTP 503.
    """
    status_code = 503
    error_code = "auth_unavailable"

    def __init__(self, message: str = "Authentication service unavailable, retry later"):
        super().__init__(message)
