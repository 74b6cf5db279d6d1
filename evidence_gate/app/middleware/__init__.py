"""Middleware package for the evidence gate."""

from evidence_gate.app.middleware.request_id import RequestIdMiddleware, get_request_id
from evidence_gate.app.middleware.rate_limit import RateLimitMiddleware, with_rate_limit
from evidence_gate.app.middleware.security_headers import (
    SecurityHeadersMiddleware,
    with_security_headers,
)

__all__ = [
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "SecurityHeadersMiddleware",
    "get_request_id",
    "with_rate_limit",
    "with_security_headers",
]
