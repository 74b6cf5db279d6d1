"""Rate limiting for the evidence management API.

This package provides fixed window rate limiting to prevent abuse of the
authentication, upload, admin and export endpoints. Counters live in an
injected store: in-memory by default, Redis for multi-process deployments.
"""

from typing import Mapping, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from evidence_gate.app.core.config import Settings, settings as default_settings

# Re-export models
from evidence_gate.app.middleware.rate_limit.models import (
    CounterEntry,
    RateLimitConfig,
    RateLimitResult,
    now_ms,
)

# Re-export backends
from evidence_gate.app.middleware.rate_limit.backends import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
)
from evidence_gate.app.middleware.rate_limit.keys import (
    default_key_generator,
    get_client_ip,
    user_key_generator,
)
from evidence_gate.app.middleware.rate_limit.policies import (
    RATE_LIMIT_POLICIES,
    get_policy,
    load_policies,
    select_policy_name,
)
from evidence_gate.app.middleware.rate_limit.responses import (
    apply_rate_limit_headers,
    build_rejection_response,
)
from evidence_gate.app.middleware.rate_limit.limiter import RateLimitCheck, RateLimiter
from evidence_gate.app.middleware.rate_limit.decorators import with_rate_limit
from evidence_gate.app.middleware.rate_limit.dependencies import RateLimitDependency

__all__ = [
    # Models
    "CounterEntry",
    "RateLimitConfig",
    "RateLimitResult",
    "now_ms",
    # Backends
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
    # Keys
    "default_key_generator",
    "get_client_ip",
    "user_key_generator",
    # Policies
    "RATE_LIMIT_POLICIES",
    "get_policy",
    "load_policies",
    "select_policy_name",
    # Responses
    "apply_rate_limit_headers",
    "build_rejection_response",
    # Main classes
    "RateLimitCheck",
    "RateLimiter",
    "RateLimitDependency",
    "RateLimitMiddleware",
    "with_rate_limit",
]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on API requests.

    Every request under the configured path prefix is counted against the
    policy its path maps to (see select_policy_name). Other paths pass
    through untouched.
    """

    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter] = None,
        policies: Optional[Mapping[str, RateLimitConfig]] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(app)
        settings = settings or default_settings
        self.enabled = settings.rate_limit_enabled
        self.path_prefix = settings.rate_limit_path_prefix
        self.policies = policies if policies is not None else load_policies(settings)
        self.limiter = limiter or RateLimiter(create_counter_store(settings))

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        if not self.enabled or not path.startswith(self.path_prefix):
            return await call_next(request)

        config = get_policy(select_policy_name(path), self.policies)
        check = await self.limiter.hit(request, config)
        if not check.allowed:
            return build_rejection_response(check.result)

        try:
            response = await call_next(request)
        except Exception:
            await self.limiter.settle(check, None)
            raise

        await self.limiter.settle(check, response.status_code)
        return apply_rate_limit_headers(response, check.result)
