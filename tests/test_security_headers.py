"""Tests for security header injection."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from evidence_gate.app.middleware.security_headers import (
    SecurityHeadersConfig,
    SecurityHeadersMiddleware,
    build_csp,
    security_headers,
    with_security_headers,
)


class TestSecurityHeaders:
    """Test header rendering."""

    def test_defaults(self):
        headers = security_headers()

        assert headers["X-Frame-Options"] == "DENY"
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains"
        assert "default-src 'self'" in headers["Content-Security-Policy"]
        assert headers["Content-Security-Policy"].endswith("upgrade-insecure-requests")

    def test_report_only_and_overrides(self):
        config = SecurityHeadersConfig(
            csp_directives={"connect-src": ["'self'", "https://api.example.com"]},
            csp_report_only=True,
            frame_options="SAMEORIGIN",
            hsts_preload=True,
        )
        headers = security_headers(config)

        assert "Content-Security-Policy" not in headers
        assert "connect-src 'self' https://api.example.com" in headers[
            "Content-Security-Policy-Report-Only"
        ]
        assert headers["X-Frame-Options"] == "SAMEORIGIN"
        assert headers["Strict-Transport-Security"].endswith("; preload")

    def test_build_csp(self):
        csp = build_csp({"default-src": ["'self'"], "upgrade-insecure-requests": []})
        assert csp == "default-src 'self'; upgrade-insecure-requests"


class TestSecurityHeadersMiddleware:
    """Test the middleware and handler forms."""

    def test_middleware_keeps_handler_headers(self):
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware)

        @app.get("/embed")
        async def embed():
            return JSONResponse({}, headers={"X-Frame-Options": "SAMEORIGIN"})

        response = TestClient(app).get("/embed")

        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"

    def test_handler_wrapper_bare_and_configured(self):
        app = FastAPI()

        @app.get("/bare")
        @with_security_headers
        async def bare(request: Request):
            return {"ok": True}

        @app.get("/configured")
        @with_security_headers(config=SecurityHeadersConfig(frame_options="SAMEORIGIN"))
        async def configured(request: Request):
            return {"ok": True}

        client = TestClient(app)
        bare_response = client.get("/bare")
        assert bare_response.json() == {"ok": True}
        assert bare_response.headers["X-Frame-Options"] == "DENY"
        assert client.get("/configured").headers["X-Frame-Options"] == "SAMEORIGIN"
