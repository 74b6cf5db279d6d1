"""Rate limit key derivation.

The default key combines the client IP, the normalized request path and a
short digest of the user-agent, so distinct clients and distinct routes
never share a counter while long user-agent strings cannot blow up key
cardinality.
"""

import hashlib
import re
from typing import Callable, Optional

from starlette.requests import Request

from evidence_gate.app.middleware.rate_limit.models import KeyGenerator

UNKNOWN = "unknown"

# Checked in order; the first populated header wins.
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")

# 16 hex chars (64 bits) keeps keys short while avoiding collisions between agents
USER_AGENT_DIGEST_LENGTH = 16

_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def _header(request: Request, name: str) -> str:
    value = request.headers.get(name)
    if not value:
        return ""
    return value.strip()


def get_client_ip(request: Request) -> str:
    """Resolve the best-effort client IP from proxy headers.

    Only the first hop of X-Forwarded-For is used. Falls back to the
    "unknown" sentinel instead of the socket peer, since behind a proxy the
    peer is the proxy itself.
    """
    for name in CLIENT_IP_HEADERS:
        value = _header(request, name)
        if not value:
            continue
        if name == "x-forwarded-for":
            value = value.split(",")[0].strip()
        if value:
            return value
    return UNKNOWN


def normalize_path(path: str) -> str:
    """Normalize a request path for use in a key.

    Drops any query string, collapses duplicate slashes and strips the
    trailing slash so "/api/upload/" and "/api//upload" share a counter.
    """
    path = path.split("?", 1)[0] or "/"
    path = _DUPLICATE_SLASHES.sub("/", path)
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def user_agent_digest(user_agent: Optional[str]) -> str:
    """Bounded-length digest of a user-agent string."""
    value = (user_agent or "").strip() or UNKNOWN
    return hashlib.sha256(value.encode()).hexdigest()[:USER_AGENT_DIGEST_LENGTH]


def default_key_generator(request: Request) -> str:
    """Build the default rate limit key for a request.

    Returns:
        Key of the form "rate_limit:{ip}:{path}:{ua_digest}"
    """
    ip = get_client_ip(request)
    path = normalize_path(request.url.path)
    ua = user_agent_digest(request.headers.get("user-agent"))
    return f"rate_limit:{ip}:{path}:{ua}"


def user_key_generator(
    resolve_user_id: Callable[[Request], Optional[str]],
) -> KeyGenerator:
    """Create a key generator that partitions quotas by authenticated user.

    Requests for which resolve_user_id returns None (anonymous traffic)
    fall back to the default client key.

    Example:
        >>> keygen = user_key_generator(lambda r: r.headers.get("x-user-id"))
        >>> config = RateLimitConfig(window_ms=60_000, max_requests=10,
        ...                          key_generator=keygen)
    """
    def key_generator(request: Request) -> str:
        user_id = resolve_user_id(request)
        if not user_id:
            return default_key_generator(request)
        path = normalize_path(request.url.path)
        return f"rate_limit:user:{user_id}:{path}"

    return key_generator
