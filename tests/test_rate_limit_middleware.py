"""Tests for RateLimitMiddleware and the application wiring."""

from unittest.mock import AsyncMock

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from evidence_gate.app.core.config import Settings
from evidence_gate.app.main import create_app
from evidence_gate.app.middleware.rate_limit import (
    CounterStore,
    InMemoryCounterStore,
    RateLimitConfig,
    RateLimitDependency,
    RateLimiter,
    RateLimitMiddleware,
)


def make_app(**overrides) -> FastAPI:
    """Application with a catch-all API route and a fresh counter store."""
    app = create_app(
        Settings(_env_file=None, **overrides),
        store=InMemoryCounterStore(sweep_interval_ms=0),
    )

    @app.api_route("/api/{path:path}", methods=["GET", "POST"])
    async def api(path: str):
        return {"path": path}

    return app


@pytest.fixture
def client():
    return TestClient(make_app())


class TestRateLimitMiddleware:
    """Path-prefix enforcement through create_app()."""

    def test_api_request_gets_quota_headers(self, client):
        response = client.get("/api/evidence")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"
        assert "Retry-After" not in response.headers

    def test_health_not_limited(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    @pytest.mark.parametrize(
        ("path", "limit"),
        [
            ("/api/auth/signin", "5"),
            ("/api/upload", "10"),
            ("/api/admin/users", "50"),
            ("/api/dashboard/export", "3"),
            ("/api/evidence", "100"),
        ],
    )
    def test_policy_selected_by_path(self, client, path, limit):
        assert client.get(path).headers["X-RateLimit-Limit"] == limit

    def test_export_limit_rejects_fourth_request(self, client):
        for _ in range(3):
            assert client.post("/api/audit-logs/export").status_code == 200

        response = client.post("/api/audit-logs/export")

        assert response.status_code == 429
        assert response.json()["error"] == "Too many requests"
        assert response.json()["retryAfter"] == 300
        assert response.headers["Retry-After"] == "300"

    def test_rejection_carries_outer_headers(self, client):
        """Security headers and the request id wrap the 429 too."""
        for _ in range(5):
            client.post("/api/auth/signin")

        response = client.post("/api/auth/signin", headers={"X-Request-ID": "req-429"})

        assert response.status_code == 429
        assert response.headers["X-Request-ID"] == "req-429"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Content-Security-Policy" in response.headers

    def test_clients_counted_separately(self, client):
        for _ in range(5):
            client.post("/api/auth/signin", headers={"X-Forwarded-For": "10.0.0.1"})

        blocked = client.post("/api/auth/signin", headers={"X-Forwarded-For": "10.0.0.1"})
        other = client.post("/api/auth/signin", headers={"X-Forwarded-For": "10.0.0.2"})

        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_policy_override_from_settings(self):
        client = TestClient(make_app(rate_limit_policy_overrides={"auth": {"max_requests": 2}}))

        assert client.post("/api/auth/signin").status_code == 200
        assert client.post("/api/auth/signin").status_code == 200
        assert client.post("/api/auth/signin").status_code == 429

    def test_auth_limit_survives_key_flooding(self):
        """Requests to many distinct paths cannot push out an exhausted AUTH counter."""
        app = create_app(Settings(_env_file=None, rate_limit_max_entries=10))

        @app.api_route("/api/{path:path}", methods=["GET", "POST"])
        async def api(path: str):
            return {"path": path}

        client = TestClient(app)
        logins = [client.post("/api/auth/login").status_code for _ in range(6)]
        assert logins == [200, 200, 200, 200, 200, 429]

        for i in range(12):
            client.get(f"/api/evidence/{i}")

        logins = [client.post("/api/auth/login").status_code for _ in range(5)]
        assert logins == [429] * 5

    def test_disabled(self):
        client = TestClient(make_app(rate_limit_enabled=False))

        for _ in range(10):
            response = client.post("/api/dashboard/export")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_custom_path_prefix(self):
        client = TestClient(make_app(rate_limit_path_prefix="/api/v2/"))

        assert "X-RateLimit-Limit" not in client.get("/api/evidence").headers
        assert "X-RateLimit-Limit" in client.get("/api/v2/evidence").headers


class TestMiddlewareOutcomeCounting:
    """Skip flags through the middleware form."""

    def make_client(self, **flags) -> tuple:
        store = InMemoryCounterStore(sweep_interval_ms=0)
        policy = RateLimitConfig(
            window_ms=60_000,
            max_requests=2,
            key_generator=lambda request: "fixed",
            name="API",
            **flags,
        )
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware,
            limiter=RateLimiter(store),
            policies={"API": policy},
            settings=Settings(_env_file=None),
        )

        @app.get("/api/items/{item_id}")
        async def item(item_id: int):
            if item_id == 0:
                return JSONResponse({"error": "not found"}, status_code=404)
            return {"id": item_id}

        return TestClient(app), store

    def test_skip_failed_requests(self):
        client, store = self.make_client(skip_failed_requests=True)

        for _ in range(4):
            assert client.get("/api/items/0").status_code == 404
        assert store.get("fixed").count == 0
        assert client.get("/api/items/1").headers["X-RateLimit-Remaining"] == "1"

    def test_skip_successful_requests(self):
        client, store = self.make_client(skip_successful_requests=True)

        for _ in range(4):
            assert client.get("/api/items/1").status_code == 200
        assert store.get("fixed").count == 0


class TestRateLimitDependency:
    """The Depends() form, rendered through the app's exception handler."""

    def test_dependency_on_unprefixed_route(self):
        app = create_app(Settings(_env_file=None), store=InMemoryCounterStore())
        export_limit = RateLimitDependency(
            RateLimitConfig(window_ms=60_000, max_requests=1, name="EXPORT")
        )

        @app.get("/reports/export")
        async def export(quota=Depends(export_limit)):
            return {"remaining": quota.remaining}

        client = TestClient(app)
        first = client.get("/reports/export")
        second = client.get("/reports/export")

        assert first.status_code == 200
        assert first.json() == {"remaining": 0}
        assert first.headers["X-RateLimit-Limit"] == "1"
        assert second.status_code == 429
        assert second.json()["message"] == "Rate limit exceeded. Please try again later."
        assert second.headers["Retry-After"] == "60"

    def test_uses_app_limiter(self):
        store = InMemoryCounterStore()
        app = create_app(Settings(_env_file=None), store=store)
        dependency = RateLimitDependency(
            RateLimitConfig(window_ms=60_000, max_requests=5),
        )

        @app.get("/reports", dependencies=[Depends(dependency)])
        async def reports():
            return []

        TestClient(app).get("/reports")

        assert len(store) == 1
        assert dependency.limiter is None

    def test_skip_flags_rejected(self):
        with pytest.raises(ValueError):
            RateLimitDependency(
                RateLimitConfig(window_ms=1000, max_requests=1, skip_failed_requests=True)
            )


class TestApplication:
    """Tests for create_app() wiring outside the rate limiter."""

    def test_health_reports_rate_limit(self, client):
        data = client.get("/health").json()

        assert data["status"] == "ok"
        assert data["rate_limit"]["enabled"] is True
        assert data["rate_limit"]["backend"] == "memory"
        assert data["rate_limit"]["policies"]["AUTH"] == {
            "window_ms": 15 * 60 * 1000,
            "max_requests": 5,
        }

    def test_unhandled_error_is_json(self):
        app = create_app(Settings(_env_file=None), store=InMemoryCounterStore())

        @app.get("/boom")
        async def boom():
            raise RuntimeError("secret detail")

        response = TestClient(app, raise_server_exceptions=False).get(
            "/boom", headers={"X-Request-ID": "req-500"}
        )

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "internal_error"
        assert data["message"] == "Internal server error"
        assert data["request_id"] == "req-500"
        assert "secret detail" not in response.text

    def test_debug_error_includes_detail(self):
        app = create_app(Settings(_env_file=None, debug=True), store=InMemoryCounterStore())

        @app.get("/boom")
        async def boom(request: Request):
            raise RuntimeError("secret detail")

        data = TestClient(app, raise_server_exceptions=False).get("/boom").json()

        assert data["message"] == "secret detail"
        assert data["exception_type"] == "RuntimeError"

    def test_lifespan_closes_store(self):
        store = AsyncMock(spec=CounterStore)
        app = create_app(Settings(_env_file=None), store=store)

        with TestClient(app):
            store.close.assert_not_awaited()

        store.close.assert_awaited_once()
