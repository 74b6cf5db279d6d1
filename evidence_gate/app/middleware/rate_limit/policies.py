"""Named rate limit policies.

Routes pick a policy by name instead of hand-rolling windows. The defaults
can be overridden per deployment through RATE_LIMIT_POLICY_OVERRIDES.
"""

import dataclasses
from types import MappingProxyType
from typing import Any, Mapping, Optional

from evidence_gate.app.core.config import Settings
from evidence_gate.app.exceptions import UnknownPolicyError
from evidence_gate.app.middleware.rate_limit.models import RateLimitConfig

MINUTE_MS = 60 * 1000

RATE_LIMIT_POLICIES: Mapping[str, RateLimitConfig] = MappingProxyType({
    # Authentication endpoints - stricter limits
    "AUTH": RateLimitConfig(window_ms=15 * MINUTE_MS, max_requests=5, name="AUTH"),
    # File upload endpoints - moderate limits
    "UPLOAD": RateLimitConfig(window_ms=MINUTE_MS, max_requests=10, name="UPLOAD"),
    # API endpoints - general limits
    "API": RateLimitConfig(window_ms=MINUTE_MS, max_requests=100, name="API"),
    # Admin endpoints - moderate limits
    "ADMIN": RateLimitConfig(window_ms=MINUTE_MS, max_requests=50, name="ADMIN"),
    # Export endpoints - stricter limits due to resource intensity
    "EXPORT": RateLimitConfig(window_ms=5 * MINUTE_MS, max_requests=3, name="EXPORT"),
})

DEFAULT_POLICY = "API"


def get_policy(
    name: str,
    policies: Optional[Mapping[str, RateLimitConfig]] = None,
    **overrides: Any,
) -> RateLimitConfig:
    """Look up a policy by name, optionally overriding fields.

    Args:
        name: Policy name (case-insensitive)
        policies: Registry to search (defaults to RATE_LIMIT_POLICIES)
        **overrides: RateLimitConfig fields to replace, e.g. max_requests=20
            or key_generator=...

    Raises:
        UnknownPolicyError: If no policy has that name
    """
    policies = RATE_LIMIT_POLICIES if policies is None else policies
    key = name.strip().upper()
    if key not in policies:
        raise UnknownPolicyError(name)
    policy = policies[key]
    if overrides:
        policy = dataclasses.replace(policy, **overrides)
    return policy


def load_policies(settings: Settings) -> Mapping[str, RateLimitConfig]:
    """Build the policy registry with the configured overrides applied."""
    policies = dict(RATE_LIMIT_POLICIES)
    for name, fields in settings.rate_limit_policy_overrides.items():
        policies[name] = get_policy(name, **fields)
    return MappingProxyType(policies)


def select_policy_name(path: str) -> str:
    """Pick the policy name for an API request path."""
    if path.startswith("/api/auth/"):
        return "AUTH"
    if path.startswith("/api/upload"):
        return "UPLOAD"
    if path.startswith("/api/admin/"):
        return "ADMIN"
    if "/export" in path:
        return "EXPORT"
    return DEFAULT_POLICY
