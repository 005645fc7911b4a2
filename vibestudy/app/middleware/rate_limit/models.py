"""Rate limiting data models.

This module contains dataclasses for rate limit policies, counter state and
decisions. All timestamps are integer milliseconds since the epoch.
"""

from dataclasses import dataclass
from typing import Optional

from vibestudy.app.exceptions import RateLimitConfigError


@dataclass(frozen=True)
class RateLimitPolicy:
    """At most ``limit`` allowed events per bucket in each fixed window.

    Raises:
        RateLimitConfigError: If ``limit`` or ``window_ms`` is not positive.
    """
    limit: int
    window_ms: int

    def __post_init__(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise RateLimitConfigError(
                f"Rate limit policy limit must be a positive integer, got {self.limit!r}"
            )
        if (
            isinstance(self.window_ms, bool)
            or not isinstance(self.window_ms, int)
            or self.window_ms <= 0
        ):
            raise RateLimitConfigError(
                f"Rate limit policy window_ms must be a positive integer, got {self.window_ms!r}"
            )

    @classmethod
    def per_minute(cls, limit: int) -> "RateLimitPolicy":
        return cls(limit=limit, window_ms=60_000)


@dataclass(frozen=True)
class CounterWindow:
    """State of one bucket right after a hit was recorded."""
    count: int
    window_start_ms: int


@dataclass
class CounterEntry:
    """Mutable per-bucket entry held by the in-memory store."""
    count: int
    window_start_ms: int
    window_ms: int


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    ``retry_after`` is whole seconds until the window resets and is only set
    when the call was denied.
    """
    allowed: bool
    identifier: str
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after: Optional[int] = None

    @property
    def reset_time(self) -> int:
        """Window reset as a Unix timestamp in seconds."""
        return -(-self.reset_at_ms // 1000)
