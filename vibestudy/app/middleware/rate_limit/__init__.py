"""Rate limiting for the sync service.

Fixed-window admission control per bucket key. A bucket key is either given
explicitly by the caller or derived from the request (signed-in learner,
bearer token hash, or client IP hash). Counters live in an injectable
counter store: in-memory by default, Redis when ``REDIS_ENABLED`` is set.

Within one window the ``limit``-th call is allowed and the ``(limit+1)``-th
is denied; the first call after ``window_ms`` has elapsed opens a new window.
"""

import hashlib
import math
import time
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_logger
from vibestudy.app.exceptions import RateLimitConfigError, RateLimitExceededError

# Re-export models
from vibestudy.app.middleware.rate_limit.models import (
    CounterEntry,
    CounterWindow,
    RateLimitPolicy,
    RateLimitResult,
)

# Re-export backends
from vibestudy.app.middleware.rate_limit.backends import (
    FIXED_WINDOW_HIT_SCRIPT,
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
)

logger = get_logger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


# Named policies shared by the API routes
RATE_LIMITS: dict[str, RateLimitPolicy] = {
    "AI_GENERATION": RateLimitPolicy.per_minute(10),
    "AI_CHECK": RateLimitPolicy.per_minute(30),
    "AI_EXPLAIN": RateLimitPolicy.per_minute(20),
    "API_GENERAL": RateLimitPolicy(
        limit=settings.rate_limit_default_limit,
        window_ms=settings.rate_limit_default_window_ms,
    ),
    "API_AUTH": RateLimitPolicy.per_minute(10),
    "ANALYTICS": RateLimitPolicy.per_minute(50),
    "PROGRESS_SYNC": RateLimitPolicy(
        limit=settings.rate_limit_progress_limit,
        window_ms=settings.rate_limit_default_window_ms,
    ),
}


def get_policy(name: str) -> RateLimitPolicy:
    """Look up a named policy.

    Raises:
        RateLimitConfigError: If no policy has that name.
    """
    try:
        return RATE_LIMITS[name]
    except KeyError:
        raise RateLimitConfigError(f"Unknown rate limit policy: {name}") from None


def _hash(value: str) -> str:
    # 32 hex chars (128 bits) keeps collisions negligible
    return hashlib.sha256(value.encode()).hexdigest()[:32]


def get_rate_limit_identifier(request: Optional[Request]) -> str:
    """Derive the default bucket key for a request.

    Priority: the learner id resolved by auth (``request.state.user_id``),
    then a hash of the bearer token, then a hash of the client IP (first
    ``X-Forwarded-For`` hop, else the socket peer). Raw tokens and IPs never
    become keys.
    """
    if request is None:
        return f"ip:{_hash('unknown')}"

    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        if token:
            return f"token:{_hash(token)}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip() or "unknown"
    else:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{_hash(client_ip)}"


def build_rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Response headers describing a rate limit decision."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after or 1)
    return headers


class RateLimiter:
    """Fixed-window rate limiter over a counter store.

    Selects the Redis store when Redis is enabled in settings, otherwise the
    in-memory store, unless a store is injected.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        clock: Optional[Clock] = None,
        use_redis: Optional[bool] = None,
        max_entries: Optional[int] = None,
    ):
        self._clock = clock or _now_ms
        if store is not None:
            self._store = store
            return

        should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
        if should_use_redis:
            self._store = RedisCounterStore()
            logger.info("Using Redis rate limit counter store")
        else:
            self._store = InMemoryCounterStore(
                max_entries=max_entries or settings.rate_limit_max_entries
            )
            logger.debug("Using in-memory rate limit counter store")

    @property
    def store(self) -> CounterStore:
        return self._store

    async def evaluate(
        self,
        request: Optional[Request],
        policy: RateLimitPolicy,
        bucket_id: Optional[str] = None,
    ) -> RateLimitResult:
        """Record one event in the bucket and decide whether it is allowed.

        Args:
            request: Used only to derive the bucket key when ``bucket_id``
                is not given
            policy: Limit and window for the bucket
            bucket_id: Explicit bucket key, takes precedence over the request

        Returns:
            RateLimitResult; counter store failures resolve to the configured
            fail-open or fail-closed decision instead of raising
        """
        key = bucket_id if bucket_id is not None else get_rate_limit_identifier(request)
        now_ms = self._clock()

        try:
            window = await self._store.hit(key, policy.window_ms, now_ms)
        except RedisConnectionError as e:
            logger.error(f"Rate limit store connection failed: {e}")
            return self._handle_store_failure(key, policy, now_ms, "connection_error")
        except RedisTimeoutError as e:
            logger.warning(f"Rate limit store timeout: {e}")
            return self._handle_store_failure(key, policy, now_ms, "timeout")
        except RedisError as e:
            logger.error(f"Rate limit store error: {e}")
            return self._handle_store_failure(key, policy, now_ms, "redis_error")
        except Exception as e:
            logger.exception(f"Unexpected rate limit error: {e}")
            return self._handle_store_failure(key, policy, now_ms, "unexpected")

        allowed = window.count <= policy.limit
        reset_at_ms = window.window_start_ms + policy.window_ms
        result = RateLimitResult(
            allowed=allowed,
            identifier=key,
            limit=policy.limit,
            remaining=max(0, policy.limit - window.count),
            reset_at_ms=reset_at_ms,
            retry_after=None if allowed else max(1, math.ceil((reset_at_ms - now_ms) / 1000)),
        )
        if not allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"bucket_id": key, "limit": policy.limit, "count": window.count},
            )
        return result

    def _handle_store_failure(
        self, key: str, policy: RateLimitPolicy, now_ms: int, error_type: str
    ) -> RateLimitResult:
        """Apply the fail-open/fail-closed policy when the store is unavailable."""
        reset_at_ms = now_ms + policy.window_ms

        if settings.rate_limit_fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. Request denied.",
                extra={"bucket_id": key},
            )
            return RateLimitResult(
                allowed=False,
                identifier=key,
                limit=policy.limit,
                remaining=0,
                reset_at_ms=reset_at_ms,
                retry_after=max(1, math.ceil(policy.window_ms / 1000)),
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check.",
            extra={"bucket_id": key},
        )
        return RateLimitResult(
            allowed=True,
            identifier=key,
            limit=policy.limit,
            remaining=policy.limit,
            reset_at_ms=reset_at_ms,
        )

    async def reset(self, bucket_id: str) -> None:
        await self._store.reset(bucket_id)

    async def cleanup(self) -> int:
        """Drop expired buckets from the store."""
        return await self._store.cleanup(self._clock())

    async def close(self) -> None:
        await self._store.close()


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    """Replace the process-wide rate limiter (tests, alternative stores)."""
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter() -> None:
    """Reset the process-wide rate limiter."""
    set_rate_limiter(None)


async def evaluate_rate_limit(
    request: Optional[Request],
    policy: RateLimitPolicy,
    bucket_id: Optional[str] = None,
) -> RateLimitResult:
    """Evaluate ``policy`` with the process-wide limiter."""
    return await get_rate_limiter().evaluate(request, policy, bucket_id=bucket_id)


def rate_limit(policy_name: str) -> Callable:
    """FastAPI dependency enforcing a named policy per caller.

    The bucket key is ``"<policy_name>:<request identifier>"`` so each
    policy counts independently. Unknown policy names fail at import time.

    Raises:
        RateLimitExceededError: When the caller's bucket is exhausted.
    """
    policy = get_policy(policy_name)

    async def dependency(request: Request) -> Optional[RateLimitResult]:
        if not settings.rate_limit_enabled:
            return None
        bucket_id = f"{policy_name}:{get_rate_limit_identifier(request)}"
        result = await evaluate_rate_limit(request, policy, bucket_id=bucket_id)
        request.state.rate_limit = result
        if not result.allowed:
            raise RateLimitExceededError(result, build_rate_limit_headers(result))
        return result

    return dependency


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies a default bucket to every request.

    Health checks are exempt. Paths under ``route_limited_prefixes`` carry
    their own :func:`rate_limit` policy and skip the default bucket; the
    middleware only copies their route result into the response headers.
    When both buckets apply, the headers report the one with fewer requests
    remaining.
    """

    def __init__(
        self,
        app,
        policy_name: str = "API_GENERAL",
        limiter: Optional[RateLimiter] = None,
        exempt_paths: tuple[str, ...] = ("/health",),
        route_limited_prefixes: tuple[str, ...] = (),
    ):
        super().__init__(app)
        self.policy_name = policy_name
        self.policy = get_policy(policy_name)
        self._limiter = limiter
        self.exempt_paths = exempt_paths
        self.route_limited_prefixes = route_limited_prefixes

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter or get_rate_limiter()

    def _is_route_limited(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.route_limited_prefixes
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if not settings.rate_limit_enabled or path in self.exempt_paths:
            return await call_next(request)

        result: Optional[RateLimitResult] = None
        if not self._is_route_limited(path):
            bucket_id = f"{self.policy_name}:{get_rate_limit_identifier(request)}"
            result = await self.limiter.evaluate(request, self.policy, bucket_id=bucket_id)

            if not result.allowed:
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "rate_limit_exceeded",
                        "message": "Rate limit exceeded. Please try again later.",
                        "retry_after": result.retry_after,
                    },
                    headers=build_rate_limit_headers(result),
                )

        response = await call_next(request)

        results = [r for r in (getattr(request.state, "rate_limit", None), result) if r is not None]
        if results:
            tightest = min(results, key=lambda r: r.remaining)
            for header, value in build_rate_limit_headers(tightest).items():
                response.headers.setdefault(header, value)
        return response


__all__ = [
    "RATE_LIMITS",
    "FIXED_WINDOW_HIT_SCRIPT",
    "CounterEntry",
    "CounterStore",
    "CounterWindow",
    "InMemoryCounterStore",
    "RateLimitMiddleware",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiter",
    "RedisCounterStore",
    "build_rate_limit_headers",
    "evaluate_rate_limit",
    "get_policy",
    "get_rate_limit_identifier",
    "get_rate_limiter",
    "rate_limit",
    "reset_rate_limiter",
    "set_rate_limiter",
]
