"""Shared fixtures for rate limit tests."""

from typing import Dict, Optional

import pytest
from starlette.requests import Request

from evidence_gate.app.middleware.rate_limit import InMemoryCounterStore, RateLimiter


class FakeClock:
    """Controllable epoch-ms clock for RateLimiter."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def build_request(
    path: str = "/api/evidence",
    headers: Optional[Dict[str, str]] = None,
    method: str = "GET",
) -> Request:
    """Build a bare Starlette request from an ASGI scope."""
    scope = {
        "type": "http",
        "method": method,
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": [
            (name.lower().encode(), value.encode())
            for name, value in (headers or {}).items()
        ],
    }
    return Request(scope)


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryCounterStore(sweep_interval_ms=0)


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)
