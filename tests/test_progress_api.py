"""End-to-end tests for the progress API through the application factory."""

import pytest
from fastapi.testclient import TestClient

from vibestudy.app.core.retry import RetryPolicy
from vibestudy.app.exceptions import AuthServiceUnavailableError, ProgressStoreError
from vibestudy.app.main import create_app
from vibestudy.app.middleware.auth import UserResolver, set_user_resolver
from vibestudy.app.middleware.rate_limit import (
    CounterWindow,
    InMemoryCounterStore,
    RateLimiter,
    reset_rate_limiter,
    set_rate_limiter,
)
from vibestudy.app.services.progress_sync import (
    CurrentUser,
    DeadLetterQueue,
    InMemoryProgressStore,
    ProgressSyncManager,
    reset_sync_manager,
    set_sync_manager,
)

AUTH = {"Authorization": "Bearer good-token"}

FAST_RETRY = RetryPolicy(max_retries=1, base_delay=0.001, jitter=False)


class StaticResolver(UserResolver):
    async def resolve(self, token):
        if token == "good-token":
            return CurrentUser(id="user-1", email="learner@example.com")
        return None


class BrokenStore(InMemoryProgressStore):
    async def apply(self, task):
        raise ProgressStoreError("store unavailable")


class ExhaustedCounterStore(InMemoryCounterStore):
    """Reports every bucket as far over its limit."""

    async def hit(self, key, window_ms, now_ms):
        window = await super().hit(key, window_ms, now_ms)
        return CounterWindow(count=1_000_000, window_start_ms=window.window_start_ms)


class RecordingCounterStore(InMemoryCounterStore):
    def __init__(self):
        super().__init__()
        self.keys = []

    async def hit(self, key, window_ms, now_ms):
        self.keys.append(key)
        return await super().hit(key, window_ms, now_ms)


class DownResolver(UserResolver):
    async def resolve(self, token):
        raise AuthServiceUnavailableError()


@pytest.fixture
def store():
    return InMemoryProgressStore()


@pytest.fixture
def install(tmp_path):
    """Install a sync manager over ``store`` and fresh auth/rate limit singletons."""

    def _install(store, counter_store=None):
        set_sync_manager(
            ProgressSyncManager(
                store=store,
                dead_letter_queue=DeadLetterQueue(tmp_path / "failed_syncs.jsonl"),
                retry_policy=FAST_RETRY,
                debounce={},
            )
        )
        set_user_resolver(StaticResolver())
        set_rate_limiter(
            RateLimiter(
                store=counter_store if counter_store is not None else InMemoryCounterStore()
            )
        )

    yield _install
    reset_sync_manager()
    reset_rate_limiter()
    set_user_resolver(None)


@pytest.fixture
def client(install, store):
    install(store)
    with TestClient(create_app()) as client:
        yield client


class TestWrites:
    def test_code_write_waited(self, client, store):
        response = client.put("/v1/progress/1/code?wait=true", json={"code": "print(1)"}, headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "synced"
        assert body["field"] == "code"
        assert body["day"] == 1
        assert store.get("user-1", 1).code == "print(1)"

    def test_every_field_route(self, client, store):
        assert client.put(
            "/v1/progress/2/notes?wait=true", json={"notes": "n"}, headers=AUTH
        ).json()["status"] == "synced"
        assert client.put(
            "/v1/progress/2/recap?wait=true", json={"answer": "a"}, headers=AUTH
        ).json()["status"] == "synced"
        assert client.put(
            "/v1/progress/2/tasks/t1?wait=true", json={"completed": True}, headers=AUTH
        ).json()["task_id"] == "t1"
        assert client.post("/v1/progress/2/complete?wait=true", headers=AUTH).status_code == 200

        progress = store.get("user-1", 2)
        assert progress.notes == "n"
        assert progress.recap_answer == "a"
        assert progress.completed_tasks == {"t1": True}
        assert progress.day_completed is True

    def test_day_completion_repeatable(self, client, store):
        first = client.post("/v1/progress/3/complete?wait=true", headers=AUTH)
        second = client.post("/v1/progress/3/complete?wait=true", headers=AUTH)

        assert first.status_code == second.status_code == 200
        assert store.get("user-1", 3).day_completed is True

    def test_signed_out_write_is_skipped(self, client, store):
        response = client.put("/v1/progress/1/code?wait=true", json={"code": "x"})

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"
        assert store.apply_calls == 0

    def test_queued_write_applied_by_shutdown(self, install, store):
        install(store)
        with TestClient(create_app()) as client:
            response = client.put("/v1/progress/4/notes", json={"notes": "later"}, headers=AUTH)

            assert response.status_code == 202
            assert response.json() == {"status": "queued"}

        assert store.get("user-1", 4).notes == "later"

    def test_failed_write_returns_502(self, install):
        install(BrokenStore())
        with TestClient(create_app()) as client:
            response = client.put("/v1/progress/1/code?wait=true", json={"code": "x"}, headers=AUTH)

            assert response.status_code == 502
            assert response.json()["status"] == "failed"
            assert client.get("/health").json()["components"]["sync"]["dead_letters"] == 1

    def test_auth_outage_returns_503_and_queues_nothing(self, install, store):
        install(store)
        set_user_resolver(DownResolver())
        with TestClient(create_app()) as client:
            response = client.put("/v1/progress/1/code", json={"code": "x"}, headers=AUTH)

            assert response.status_code == 503
            assert response.json()["error"] == "auth_unavailable"
            assert client.get("/health").json()["components"]["sync"]["pending"] == 0

        assert store.apply_calls == 0

    @pytest.mark.parametrize("path", ["/v1/progress/0/code", "/v1/progress/abc/code"])
    def test_invalid_day_rejected(self, client, path):
        assert client.put(path, json={"code": "x"}, headers=AUTH).status_code == 422

    def test_oversized_token_rejected(self, client):
        headers = {"Authorization": "Bearer " + "x" * 5000}

        response = client.put("/v1/progress/1/code", json={"code": "x"}, headers=headers)

        assert response.status_code == 400


class TestReadAndImport:
    def test_get_progress_requires_user(self, client):
        response = client.get("/v1/progress")

        assert response.status_code == 401
        assert response.json()["error"] == "authentication_failed"

    def test_get_progress(self, client):
        client.put("/v1/progress/2/code?wait=true", json={"code": "two"}, headers=AUTH)
        client.put("/v1/progress/1/notes?wait=true", json={"notes": "one"}, headers=AUTH)

        response = client.get("/v1/progress", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-1"
        assert [d["day"] for d in body["days"]] == [1, 2]
        assert body["days"][1]["code"] == "two"

    def test_import_guest_progress(self, client, store):
        payload = {
            "days": {
                "1": {"code": "guest code", "completed_tasks": ["t1", "t2"], "day_completed": True},
                "2": {"notes": "guest notes"},
            }
        }

        response = client.post("/v1/progress/import?wait=true", json=payload, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"status": "done", "writes": 5, "failed": 0}
        assert store.get("user-1", 1).completed_tasks == {"t1": True, "t2": True}
        assert store.get("user-1", 2).notes == "guest notes"

    def test_import_requires_user(self, client):
        response = client.post("/v1/progress/import", json={"days": {"1": {"code": "x"}}})

        assert response.status_code == 401

    def test_import_rejects_non_positive_day(self, client):
        response = client.post(
            "/v1/progress/import", json={"days": {"0": {"code": "x"}}}, headers=AUTH
        )

        assert response.status_code == 422


class TestRateLimitAndHealth:
    def test_rate_limit_headers_on_success(self, client):
        response = client.put("/v1/progress/1/code", json={"code": "x"}, headers=AUTH)

        assert response.status_code == 202
        assert "X-RateLimit-Limit" in response.headers
        assert "X-RateLimit-Remaining" in response.headers
        assert "X-Request-ID" in response.headers

    def test_exhausted_bucket_returns_429(self, install, store):
        install(store, counter_store=ExhaustedCounterStore())
        with TestClient(create_app()) as client:
            response = client.put("/v1/progress/1/code", json={"code": "x"}, headers=AUTH)

            assert response.status_code == 429
            assert response.json()["error"] == "rate_limit_exceeded"
            assert int(response.headers["Retry-After"]) >= 1
            assert response.headers["X-RateLimit-Remaining"] == "0"
            assert client.get("/health").status_code == 200

        assert store.apply_calls == 0

    def test_progress_limit_applies_instead_of_default(self, client):
        responses = [
            client.put("/v1/progress/1/code", json={"code": str(i)}, headers=AUTH)
            for i in range(121)
        ]

        assert {r.status_code for r in responses[:120]} == {202}
        assert responses[119].headers["X-RateLimit-Limit"] == "120"
        assert responses[119].headers["X-RateLimit-Remaining"] == "0"
        assert responses[120].status_code == 429

    def test_bucket_keyed_on_learner(self, install, store):
        counters = RecordingCounterStore()
        install(store, counter_store=counters)
        with TestClient(create_app()) as client:
            client.put("/v1/progress/1/code", json={"code": "x"}, headers=AUTH)
            client.put("/v1/progress/1/code", json={"code": "y"})

        assert any(key.endswith("PROGRESS_SYNC:user:user-1") for key in counters.keys)
        assert any(":ip:" in key for key in counters.keys)
        assert not any(":token:" in key for key in counters.keys)

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["components"]["progress_store"]["status"] == "ok"
        assert body["components"]["rate_limit"]["type"] == "memory"
        assert body["components"]["sync"]["pending"] == 0
