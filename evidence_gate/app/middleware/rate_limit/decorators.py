"""Per-handler rate limiting.

with_rate_limit wraps a single endpoint instead of a whole path prefix:

    @app.post("/api/evidence")
    @with_rate_limit(get_policy("UPLOAD"))
    async def upload(request: Request) -> Response:
        ...
"""

import functools
from typing import Any, Awaitable, Callable, Optional

from starlette.responses import Response

from evidence_gate.app.core.utils import ensure_response, find_request
from evidence_gate.app.middleware.rate_limit.limiter import RateLimiter
from evidence_gate.app.middleware.rate_limit.models import RateLimitConfig
from evidence_gate.app.middleware.rate_limit.responses import (
    apply_rate_limit_headers,
    build_rejection_response,
)

Handler = Callable[..., Awaitable[Any]]


def with_rate_limit(
    config: RateLimitConfig,
    limiter: Optional[RateLimiter] = None,
) -> Callable[[Handler], Callable[..., Awaitable[Response]]]:
    """Wrap an async request handler with a rate limit policy.

    The wrapper keeps the handler's signature, so it can be stacked with
    other wrappers and registered as a FastAPI path operation or a plain
    Starlette endpoint. The handler must take the Request as `request`.

    Args:
        config: Policy to enforce
        limiter: Gate to count against; each decorated handler gets its own
            in-memory gate when omitted

    Returns:
        Decorator producing the wrapped handler. Rejected requests get the
        429 response and never reach the handler; admitted ones get the
        handler's response plus X-RateLimit-* headers it did not set itself.
        Exceptions from the handler propagate unchanged.
    """
    def decorator(handler: Handler) -> Callable[..., Awaitable[Response]]:
        gate = limiter or RateLimiter()

        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            request = find_request(args, kwargs)
            check = await gate.hit(request, config)
            if not check.allowed:
                return build_rejection_response(check.result)

            try:
                response = ensure_response(await handler(*args, **kwargs))
            except Exception:
                await gate.settle(check, None)
                raise

            await gate.settle(check, response.status_code)
            return apply_rate_limit_headers(response, check.result)

        wrapper.rate_limiter = gate
        return wrapper

    return decorator
