"""FastAPI dependency form of the rate limit gate."""

from typing import Optional

from fastapi import Request, Response

from evidence_gate.app.exceptions import RateLimitExceededError
from evidence_gate.app.middleware.rate_limit.limiter import RateLimiter
from evidence_gate.app.middleware.rate_limit.models import RateLimitConfig, RateLimitResult
from evidence_gate.app.middleware.rate_limit.responses import rate_limit_headers


class RateLimitDependency:
    """Enforce a policy through Depends().

    Usage:
        @app.get("/api/reports/export", dependencies=[Depends(RateLimitDependency(get_policy("EXPORT")))])

    The gate is resolved in order: the limiter given here, the app's
    `app.state.rate_limiter`, then a private in-memory gate. Rejections raise
    RateLimitExceededError, which create_app() renders as the 429 response.
    Quota headers are written to the injected Response, so they only reach
    the client when the endpoint returns data rather than its own Response.

    Outcome-aware counting needs the handler's result, which a dependency
    never sees; policies with skip flags must use with_rate_limit or the
    middleware instead.
    """

    def __init__(self, config: RateLimitConfig, limiter: Optional[RateLimiter] = None):
        if config.skip_successful_requests or config.skip_failed_requests:
            raise ValueError(
                "RateLimitDependency cannot enforce skip_successful_requests/"
                "skip_failed_requests; use with_rate_limit instead"
            )
        self.config = config
        self.limiter = limiter
        self._fallback: Optional[RateLimiter] = None

    def _resolve_limiter(self, request: Request) -> RateLimiter:
        if self.limiter is not None:
            return self.limiter
        app_limiter = getattr(request.app.state, "rate_limiter", None)
        if app_limiter is not None:
            return app_limiter
        if self._fallback is None:
            self._fallback = RateLimiter()
        return self._fallback

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        check = await self._resolve_limiter(request).hit(request, self.config)
        if not check.allowed:
            raise RateLimitExceededError(check.result, policy=self.config.name)

        for name, value in rate_limit_headers(check.result).items():
            response.headers[name] = value
        return check.result
