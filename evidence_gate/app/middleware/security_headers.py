"""Security header injection.

Headers are only added when the response does not already carry them, so
this layer and the rate limit layer can wrap each other in either order.
"""

import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from evidence_gate.app.core.utils import ensure_response

DEFAULT_CSP_DIRECTIVES: dict[str, list[str]] = {
    "default-src": ["'self'"],
    "script-src": ["'self'", "'unsafe-inline'"],
    "style-src": ["'self'", "'unsafe-inline'", "https://fonts.googleapis.com"],
    "img-src": ["'self'", "data:", "https:", "blob:"],
    "font-src": ["'self'", "data:", "https://fonts.gstatic.com"],
    "connect-src": ["'self'"],
    "frame-src": ["'none'"],
    "object-src": ["'none'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
    "frame-ancestors": ["'none'"],
    "upgrade-insecure-requests": [],
}

DEFAULT_PERMISSIONS_POLICY = (
    "camera=(), microphone=(), geolocation=(), payment=(), usb=(), "
    "magnetometer=(), gyroscope=(), accelerometer=()"
)


@dataclass
class SecurityHeadersConfig:
    """Overrides for the default security headers."""
    csp_directives: dict[str, list[str]] = field(default_factory=dict)
    csp_report_only: bool = False
    frame_options: str = "DENY"
    referrer_policy: str = "strict-origin-when-cross-origin"
    hsts_max_age: int = 31536000  # 1 year
    hsts_include_subdomains: bool = True
    hsts_preload: bool = False
    permissions_policy: str = DEFAULT_PERMISSIONS_POLICY


def build_csp(directives: dict[str, list[str]]) -> str:
    """Render CSP directives; a directive with no values is emitted bare."""
    parts = []
    for directive, values in directives.items():
        parts.append(f"{directive} {' '.join(values)}" if values else directive)
    return "; ".join(parts)


def security_headers(config: Optional[SecurityHeadersConfig] = None) -> dict[str, str]:
    config = config or SecurityHeadersConfig()
    csp_header = (
        "Content-Security-Policy-Report-Only"
        if config.csp_report_only
        else "Content-Security-Policy"
    )
    hsts = f"max-age={config.hsts_max_age}"
    if config.hsts_include_subdomains:
        hsts += "; includeSubDomains"
    if config.hsts_preload:
        hsts += "; preload"

    return {
        csp_header: build_csp({**DEFAULT_CSP_DIRECTIVES, **config.csp_directives}),
        "X-Frame-Options": config.frame_options,
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": config.referrer_policy,
        "Strict-Transport-Security": hsts,
        "Permissions-Policy": config.permissions_policy,
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-origin",
        "X-DNS-Prefetch-Control": "off",
        "X-Download-Options": "noopen",
        "X-Permitted-Cross-Domain-Policies": "none",
    }


def apply_security_headers(
    response: Response,
    config: Optional[SecurityHeadersConfig] = None,
) -> Response:
    """Add security headers the response does not already have."""
    for name, value in security_headers(config).items():
        response.headers.setdefault(name, value)
    return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware applying security headers to every response, 429s included."""

    def __init__(self, app, config: Optional[SecurityHeadersConfig] = None):
        super().__init__(app)
        self.config = config

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        return apply_security_headers(response, self.config)


def with_security_headers(
    handler: Optional[Callable[..., Awaitable[Any]]] = None,
    *,
    config: Optional[SecurityHeadersConfig] = None,
):
    """Per-handler form of SecurityHeadersMiddleware.

    Usable bare (@with_security_headers) or with a config
    (@with_security_headers(config=...)).
    """
    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Response]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            response = ensure_response(await fn(*args, **kwargs))
            return apply_security_headers(response, config)

        return wrapper

    if handler is not None:
        return decorator(handler)
    return decorator
