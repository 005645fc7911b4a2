"""Tests for the fixed-window rate limiter."""

import hashlib
import types
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from starlette.requests import Request

from vibestudy.app.exceptions import RateLimitConfigError, RateLimitExceededError
from vibestudy.app.middleware.rate_limit import (
    RATE_LIMITS,
    CounterWindow,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitMiddleware,
    RateLimitPolicy,
    RateLimitResult,
    RedisCounterStore,
    build_rate_limit_headers,
    get_policy,
    get_rate_limit_identifier,
    rate_limit,
    reset_rate_limiter,
    set_rate_limiter,
    settings,
)


class FakeClock:
    """Millisecond clock moved by hand."""

    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_request(headers: dict | None = None, client: tuple | None = ("10.0.0.1", 4321)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(store=InMemoryCounterStore(), clock=clock)


class TestRateLimitPolicy:
    """Policy validation happens at construction."""

    @pytest.mark.parametrize(
        ("limit", "window_ms"),
        [(0, 1000), (-1, 1000), (5, 0), (5, -10), (1.5, 1000), (True, 1000)],
    )
    def test_invalid_policy_raises(self, limit, window_ms):
        with pytest.raises(RateLimitConfigError):
            RateLimitPolicy(limit=limit, window_ms=window_ms)

    def test_per_minute(self):
        policy = RateLimitPolicy.per_minute(30)
        assert policy.limit == 30
        assert policy.window_ms == 60_000

    def test_named_policies(self):
        assert RATE_LIMITS["AI_GENERATION"] == RateLimitPolicy(10, 60_000)
        assert RATE_LIMITS["AI_CHECK"].limit == 30
        assert RATE_LIMITS["AI_EXPLAIN"].limit == 20
        assert RATE_LIMITS["API_AUTH"].limit == 10
        assert RATE_LIMITS["ANALYTICS"].limit == 50

    def test_unknown_policy_name_raises(self):
        with pytest.raises(RateLimitConfigError):
            get_policy("NOPE")

    def test_unknown_policy_in_dependency_fails_at_setup(self):
        with pytest.raises(RateLimitConfigError):
            rate_limit("NOPE")


class TestFixedWindow:
    """Allow/deny decisions of RateLimiter.evaluate."""

    @pytest.mark.asyncio
    async def test_single_slot_bucket(self, limiter):
        policy = RateLimitPolicy(limit=1, window_ms=10_000)

        first = await limiter.evaluate(None, policy, bucket_id="limited")
        second = await limiter.evaluate(None, policy, bucket_id="limited")

        assert first.allowed is True
        assert second.allowed is False

    @pytest.mark.asyncio
    async def test_limit_th_call_allowed_next_denied(self, limiter):
        policy = RateLimitPolicy(limit=3, window_ms=60_000)

        results = [await limiter.evaluate(None, policy, bucket_id="b") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_denied_calls_keep_being_denied(self, limiter):
        policy = RateLimitPolicy(limit=2, window_ms=60_000)
        for _ in range(2):
            await limiter.evaluate(None, policy, bucket_id="b")

        for _ in range(5):
            result = await limiter.evaluate(None, policy, bucket_id="b")
            assert result.allowed is False

    @pytest.mark.asyncio
    async def test_window_reset_after_window_elapses(self, limiter, clock):
        policy = RateLimitPolicy(limit=1, window_ms=10_000)
        await limiter.evaluate(None, policy, bucket_id="b")
        assert (await limiter.evaluate(None, policy, bucket_id="b")).allowed is False

        clock.advance(10_000)
        result = await limiter.evaluate(None, policy, bucket_id="b")

        assert result.allowed is True
        assert result.remaining == 0
        assert result.reset_at_ms == clock.now + 10_000

    @pytest.mark.asyncio
    async def test_still_denied_just_before_window_end(self, limiter, clock):
        policy = RateLimitPolicy(limit=1, window_ms=10_000)
        await limiter.evaluate(None, policy, bucket_id="b")

        clock.advance(9_999)
        result = await limiter.evaluate(None, policy, bucket_id="b")

        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_window_is_fixed_from_first_call(self, limiter, clock):
        policy = RateLimitPolicy(limit=2, window_ms=10_000)
        start = clock.now
        await limiter.evaluate(None, policy, bucket_id="b")
        clock.advance(6_000)
        await limiter.evaluate(None, policy, bucket_id="b")
        clock.advance(3_000)

        denied = await limiter.evaluate(None, policy, bucket_id="b")

        assert denied.allowed is False
        assert denied.reset_at_ms == start + 10_000
        assert denied.retry_after == 1

    @pytest.mark.asyncio
    async def test_retry_after_counts_whole_seconds_until_reset(self, limiter, clock):
        policy = RateLimitPolicy(limit=1, window_ms=10_000)
        await limiter.evaluate(None, policy, bucket_id="b")
        clock.advance(4_000)

        denied = await limiter.evaluate(None, policy, bucket_id="b")

        assert denied.retry_after == 6

    @pytest.mark.asyncio
    async def test_buckets_are_independent(self, limiter):
        policy = RateLimitPolicy(limit=2, window_ms=60_000)
        for _ in range(3):
            await limiter.evaluate(None, policy, bucket_id="exhausted")

        other = await limiter.evaluate(None, policy, bucket_id="fresh")

        assert other.allowed is True
        assert other.remaining == 1

    @pytest.mark.asyncio
    async def test_explicit_bucket_overrides_request_key(self, limiter):
        policy = RateLimitPolicy(limit=1, window_ms=60_000)
        first = make_request(client=("10.0.0.1", 1))
        second = make_request(client=("10.0.0.2", 1))

        await limiter.evaluate(first, policy, bucket_id="shared")
        result = await limiter.evaluate(second, policy, bucket_id="shared")

        assert result.allowed is False
        assert result.identifier == "shared"

    @pytest.mark.asyncio
    async def test_request_key_used_without_bucket(self, limiter):
        policy = RateLimitPolicy(limit=1, window_ms=60_000)

        await limiter.evaluate(make_request(client=("10.0.0.1", 1)), policy)
        same_ip = await limiter.evaluate(make_request(client=("10.0.0.1", 2)), policy)
        other_ip = await limiter.evaluate(make_request(client=("10.0.0.2", 1)), policy)

        assert same_ip.allowed is False
        assert other_ip.allowed is True

    @pytest.mark.asyncio
    async def test_reset_clears_bucket(self, limiter):
        policy = RateLimitPolicy(limit=1, window_ms=60_000)
        await limiter.evaluate(None, policy, bucket_id="b")

        await limiter.reset("b")

        assert (await limiter.evaluate(None, policy, bucket_id="b")).allowed is True

    @pytest.mark.asyncio
    async def test_cleanup_uses_limiter_clock(self, limiter, clock):
        policy = RateLimitPolicy(limit=1, window_ms=1_000)
        await limiter.evaluate(None, policy, bucket_id="a")
        clock.advance(1_000)
        await limiter.evaluate(None, policy, bucket_id="b")

        assert await limiter.cleanup() == 1
        assert len(limiter.store) == 1


class TestIdentifier:
    """Default bucket keys never contain raw tokens or addresses."""

    def test_ip_is_hashed(self):
        key = get_rate_limit_identifier(make_request(client=("203.0.113.7", 1)))

        assert key == "ip:" + hashlib.sha256(b"203.0.113.7").hexdigest()[:32]
        assert "203.0.113.7" not in key

    def test_first_forwarded_hop_wins(self):
        request = make_request(
            headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1"}, client=("10.0.0.1", 1)
        )

        key = get_rate_limit_identifier(request)

        assert key == "ip:" + hashlib.sha256(b"198.51.100.1").hexdigest()[:32]

    def test_bearer_token_is_hashed(self):
        request = make_request(headers={"Authorization": "Bearer secret-token"})

        key = get_rate_limit_identifier(request)

        assert key.startswith("token:")
        assert "secret-token" not in key

    def test_resolved_user_preferred(self):
        request = make_request(headers={"Authorization": "Bearer secret-token"})
        request.state.user_id = "user-42"

        assert get_rate_limit_identifier(request) == "user:user-42"

    def test_missing_client(self):
        key = get_rate_limit_identifier(make_request(client=None))
        assert key == "ip:" + hashlib.sha256(b"unknown").hexdigest()[:32]


class TestInMemoryCounterStore:
    """Tests for the process-local counter store."""

    @pytest.mark.asyncio
    async def test_lru_eviction_drops_oldest(self):
        store = InMemoryCounterStore(max_entries=5)
        for i in range(6):
            await store.hit(f"k{i}", 60_000, 0)

        assert len(store) == 5
        # k0 was evicted, so it starts a fresh window
        window = await store.hit("k0", 60_000, 0)
        assert window.count == 1

    @pytest.mark.asyncio
    async def test_recent_use_protects_from_eviction(self):
        store = InMemoryCounterStore(max_entries=3)
        await store.hit("a", 60_000, 0)
        await store.hit("b", 60_000, 0)
        await store.hit("c", 60_000, 0)
        await store.hit("a", 60_000, 0)  # a becomes most recent

        await store.hit("d", 60_000, 0)  # evicts b

        assert (await store.hit("a", 60_000, 0)).count == 3
        assert (await store.hit("b", 60_000, 0)).count == 1

    @pytest.mark.asyncio
    async def test_cleanup_drops_expired_windows(self):
        store = InMemoryCounterStore()
        await store.hit("old", 1_000, 0)
        await store.hit("new", 1_000, 900)

        dropped = await store.cleanup(1_000)

        assert dropped == 1
        assert len(store) == 1


class TestRedisCounterStore:
    """Tests for the Redis counter store with a mocked client."""

    @pytest.mark.asyncio
    async def test_hit_runs_lua_script(self):
        client = MagicMock()
        client.eval = AsyncMock(return_value=[3, 1000])
        store = RedisCounterStore(redis_client=client)

        window = await store.hit("API_GENERAL:ip:abc", 60_000, 1500)

        assert window == CounterWindow(count=3, window_start_ms=1000)
        args = client.eval.await_args.args
        assert args[1] == 1
        assert args[2] == "ratelimit:API_GENERAL:ip:abc"
        assert args[3:] == (1500, 60_000)

    @pytest.mark.asyncio
    async def test_limiter_decides_from_shared_count(self, clock):
        client = MagicMock()
        client.eval = AsyncMock(return_value=[11, clock.now - 5_000])
        limiter = RateLimiter(store=RedisCounterStore(redis_client=client), clock=clock)

        result = await limiter.evaluate(None, RateLimitPolicy(10, 60_000), bucket_id="b")

        assert result.allowed is False
        assert result.retry_after == 55

    @pytest.mark.asyncio
    async def test_connection_error_fails_open(self, clock):
        client = MagicMock()
        client.eval = AsyncMock(side_effect=redis.ConnectionError("down"))
        limiter = RateLimiter(store=RedisCounterStore(redis_client=client), clock=clock)

        with patch.object(settings, "rate_limit_fail_closed", False):
            result = await limiter.evaluate(None, RateLimitPolicy(5, 60_000), bucket_id="b")

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_timeout_fails_closed_when_configured(self, clock):
        client = MagicMock()
        client.eval = AsyncMock(side_effect=redis.TimeoutError("slow"))
        limiter = RateLimiter(store=RedisCounterStore(redis_client=client), clock=clock)

        with patch.object(settings, "rate_limit_fail_closed", True):
            result = await limiter.evaluate(None, RateLimitPolicy(5, 60_000), bucket_id="b")

        assert result.allowed is False
        assert result.retry_after == 60

    @pytest.mark.asyncio
    async def test_unexpected_store_error_never_raises(self, clock):
        store = MagicMock(spec=InMemoryCounterStore)
        store.hit = AsyncMock(side_effect=RuntimeError("boom"))
        limiter = RateLimiter(store=store, clock=clock)

        with patch.object(settings, "rate_limit_fail_closed", False):
            result = await limiter.evaluate(None, RateLimitPolicy(5, 60_000), bucket_id="b")

        assert result.allowed is True

    def test_backend_selection(self):
        assert isinstance(RateLimiter(use_redis=True).store, RedisCounterStore)
        assert isinstance(RateLimiter(use_redis=False).store, InMemoryCounterStore)


class TestHeaders:
    def test_allowed_headers(self):
        result = RateLimitResult(
            allowed=True, identifier="b", limit=10, remaining=7, reset_at_ms=1_700_000_000_500
        )

        headers = build_rate_limit_headers(result)

        assert headers == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "7",
            "X-RateLimit-Reset": "1700000001",
        }

    def test_denied_headers_include_retry_after(self):
        result = RateLimitResult(
            allowed=False, identifier="b", limit=10, remaining=0,
            reset_at_ms=1_700_000_000_000, retry_after=12,
        )

        headers = build_rate_limit_headers(result)

        assert headers["Retry-After"] == "12"
        assert headers["X-RateLimit-Remaining"] == "0"


class TestHttpIntegration:
    """rate_limit() dependency and RateLimitMiddleware on a real app."""

    @pytest.fixture(autouse=True)
    def fresh_limiter(self):
        set_rate_limiter(RateLimiter(store=InMemoryCounterStore()))
        yield
        reset_rate_limiter()

    def _app(self) -> FastAPI:
        app = FastAPI()

        @app.exception_handler(RateLimitExceededError)
        async def handler(request, exc: RateLimitExceededError):
            return JSONResponse(status_code=429, content=exc.to_response(), headers=exc.headers)

        @app.get("/auth", dependencies=[Depends(rate_limit("API_AUTH"))])
        async def auth_route():
            return {"ok": True}

        @app.get("/analytics", dependencies=[Depends(rate_limit("ANALYTICS"))])
        async def analytics_route():
            return {"ok": True}

        return app

    def test_dependency_denies_after_limit(self):
        client = TestClient(self._app())

        statuses = [client.get("/auth").status_code for _ in range(11)]

        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429

    def test_denied_response_has_headers_and_body(self):
        client = TestClient(self._app())
        for _ in range(10):
            client.get("/auth")

        response = client.get("/auth")

        assert response.status_code == 429
        assert response.json()["error"] == "rate_limit_exceeded"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_policies_count_separately(self):
        client = TestClient(self._app())
        for _ in range(11):
            client.get("/auth")

        assert client.get("/analytics").status_code == 200

    def test_middleware_limits_every_route_but_health(self):
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware,
            policy_name="API_AUTH",
            limiter=RateLimiter(store=InMemoryCounterStore()),
        )

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        client = TestClient(app)
        responses = [client.get("/ping") for _ in range(11)]

        assert responses[0].headers["X-RateLimit-Remaining"] == "9"
        assert responses[10].status_code == 429
        assert responses[10].json()["error"] == "rate_limit_exceeded"
        assert client.get("/health").status_code == 200

    def test_route_limited_prefix_skips_default_bucket(self):
        app = self._app()
        app.add_middleware(
            RateLimitMiddleware,
            policy_name="API_AUTH",
            limiter=RateLimiter(store=InMemoryCounterStore()),
            route_limited_prefixes=("/analytics",),
        )
        client = TestClient(app)

        responses = [client.get("/analytics") for _ in range(20)]

        # ANALYTICS allows 50/min; the 10/min default bucket never applies
        assert {r.status_code for r in responses} == {200}
        assert responses[-1].headers["X-RateLimit-Limit"] == "50"
        assert responses[-1].headers["X-RateLimit-Remaining"] == "30"

    def test_headers_report_tightest_bucket(self):
        app = self._app()
        app.add_middleware(
            RateLimitMiddleware,
            policy_name="API_AUTH",
            limiter=RateLimiter(store=InMemoryCounterStore()),
        )
        client = TestClient(app)

        responses = [client.get("/analytics") for _ in range(11)]

        assert responses[9].headers["X-RateLimit-Limit"] == "10"
        assert responses[9].headers["X-RateLimit-Remaining"] == "0"
        assert responses[10].status_code == 429


def test_middleware_package_exposes_rate_limit_submodule():
    from vibestudy.app import middleware

    assert isinstance(middleware.rate_limit, types.ModuleType)
    assert callable(middleware.rate_limit.rate_limit)
