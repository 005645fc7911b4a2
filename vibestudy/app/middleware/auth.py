import asyncio
import hashlib
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Awaitable, Callable, Optional, Tuple

import httpx
from fastapi import Depends, HTTPException, Request

from vibestudy.app.core.config import settings
from vibestudy.app.core.http_client import get_http_client
from vibestudy.app.core.logging import get_logger
from vibestudy.app.core.retry import RETRYABLE_CLIENT_STATUSES
from vibestudy.app.exceptions import AuthenticationError, AuthServiceUnavailableError
from vibestudy.app.services.progress_sync.models import CurrentUser

logger = get_logger(__name__)

MAX_TOKEN_LENGTH = 4096

UserResolverFn = Callable[[], Awaitable[Optional[CurrentUser]]]


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract the bearer token from the Authorization header.

    Raises:
        HTTPException: 400 if the token is unreasonably long
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    token = auth[7:].strip()
    if not token:
        return None
    # Supabase JWTs are ~1KB; reject anything far larger before hashing
    if len(token) > MAX_TOKEN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Access token too long (max {MAX_TOKEN_LENGTH} characters)",
        )
    return token


class UserResolver(ABC):
    """Resolves an access token to the signed-in learner."""

    @abstractmethod
    async def resolve(self, token: Optional[str]) -> Optional[CurrentUser]:
        """Return the learner for ``token``, or None when signed out."""


class SupabaseUserResolver(UserResolver):
    """Resolves Supabase access tokens through ``GET /auth/v1/user``.

    Successful lookups are cached by token hash for a short TTL so a burst of
    progress writes costs one auth round trip. The cache is an OrderedDict
    LRU guarded by an asyncio.Lock; when full, the oldest 20% are evicted.

    A missing or rejected (401/403) token resolves to None and the caller
    falls back to local-only mode. An unreachable auth server, a 5xx or a
    408/425/429 raises :class:`AuthServiceUnavailableError` instead.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        cache_ttl_seconds: Optional[float] = None,
        cache_max_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._http_client = http_client
        self._base_url = (base_url if base_url is not None else settings.supabase_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.supabase_anon_key
        self._cache_ttl = (
            cache_ttl_seconds
            if cache_ttl_seconds is not None
            else settings.supabase_auth_cache_ttl_seconds
        )
        self._cache_max_size = cache_max_size or settings.supabase_auth_cache_max_size
        self._clock = clock
        # {token_hash: (user, cached_at)}
        self._cache: OrderedDict[str, Tuple[CurrentUser, float]] = OrderedDict()
        self._cache_lock = asyncio.Lock()

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    async def _get_cached_user(self, token_hash: str) -> Optional[CurrentUser]:
        async with self._cache_lock:
            cached = self._cache.get(token_hash)
            if cached is None:
                return None
            user, cached_at = cached
            if self._clock() - cached_at >= self._cache_ttl:
                del self._cache[token_hash]
                return None
            self._cache.move_to_end(token_hash)
            return user

    async def _cache_user(self, token_hash: str, user: CurrentUser) -> None:
        async with self._cache_lock:
            self._cache.pop(token_hash, None)
            if len(self._cache) >= self._cache_max_size:
                remove_count = max(1, int(self._cache_max_size * 0.2))
                for _ in range(remove_count):
                    if self._cache:
                        self._cache.popitem(last=False)
            self._cache[token_hash] = (user, self._clock())

    async def resolve(self, token: Optional[str]) -> Optional[CurrentUser]:
        if not token:
            return None
        if not self._base_url:
            logger.debug("Supabase URL not configured, treating request as signed out")
            return None

        token_hash = hashlib.sha256(token.encode()).hexdigest()
        cached = await self._get_cached_user(token_hash)
        if cached is not None:
            return cached

        try:
            response = await self.http_client.get(
                f"{self._base_url}/auth/v1/user",
                headers={"apikey": self._api_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Supabase auth lookup failed: {type(e).__name__}: {e}")
            raise AuthServiceUnavailableError() from e

        status_code = response.status_code
        if status_code in (401, 403):
            return None
        if status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES:
            logger.warning(f"Supabase auth lookup returned HTTP {status_code}")
            raise AuthServiceUnavailableError(f"Authentication service returned HTTP {status_code}")
        if status_code != 200:
            logger.warning(f"Supabase auth lookup rejected token with HTTP {status_code}")
            return None

        payload = response.json()
        user_id = payload.get("id")
        if not user_id:
            return None
        user = CurrentUser(id=str(user_id), email=payload.get("email"))
        await self._cache_user(token_hash, user)
        return user


_user_resolver: Optional[UserResolver] = None


def get_user_resolver() -> UserResolver:
    """Get the process-wide user resolver."""
    global _user_resolver
    if _user_resolver is None:
        _user_resolver = SupabaseUserResolver()
    return _user_resolver


def set_user_resolver(resolver: Optional[UserResolver]) -> None:
    """Replace the process-wide user resolver (None restores the default)."""
    global _user_resolver
    _user_resolver = resolver


def request_user_resolver(request: Request) -> UserResolverFn:
    """Bind a zero-argument resolver to the request's bearer token.

    The sync manager calls it when a write is issued. A resolved learner id
    is stored on ``request.state.user_id`` for logging and rate limit keys.
    """
    token = get_bearer_token(request)

    async def resolve() -> Optional[CurrentUser]:
        user = await get_user_resolver().resolve(token)
        if user is not None:
            request.state.user_id = user.id
        return user

    return resolve


async def get_optional_user(request: Request) -> Optional[CurrentUser]:
    """FastAPI dependency: the signed-in learner, or None.

    Declare it ahead of rate limit dependencies so buckets key on the
    learner id. FastAPI caches the result for the rest of the request.

    Raises:
        AuthServiceUnavailableError: 503 if the auth server is unreachable
    """
    return await request_user_resolver(request)()


async def require_user(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    """FastAPI dependency for routes that need a signed-in learner.

    Raises:
        AuthenticationError: 401 if no learner could be resolved
    """
    if user is None:
        raise AuthenticationError()
    return user
