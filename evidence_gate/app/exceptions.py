"""Custom exceptions for the evidence gate application."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from evidence_gate.app.middleware.rate_limit.models import RateLimitResult


class EvidenceGateError(Exception):
    """Base class for application exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Evidence gate error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(EvidenceGateError):
    """Raised when a request is rejected by a rate limit policy.

    Carries the decision so the exception handler can render the same
    429 body and headers the middleware would.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: RateLimitResult, policy: str | None = None):
        self.result = result
        self.policy = policy
        message = "Rate limit exceeded. Please try again later."
        if policy:
            message = f"Rate limit exceeded for policy {policy}. Please try again later."
        super().__init__(message)


class UnknownPolicyError(EvidenceGateError, KeyError):
    """Raised when a rate limit policy name is not in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown rate limit policy: {name!r}")

    def __str__(self) -> str:
        return self.message
