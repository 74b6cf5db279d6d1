from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from evidence_gate.app.core.config import Settings, settings as default_settings
from evidence_gate.app.core.logging import get_logger, setup_logging
from evidence_gate.app.exceptions import RateLimitExceededError
from evidence_gate.app.middleware.rate_limit import (
    CounterStore,
    RateLimiter,
    RateLimitMiddleware,
    RedisCounterStore,
    build_rejection_response,
    create_counter_store,
    load_policies,
)
from evidence_gate.app.middleware.request_id import RequestIdMiddleware, get_request_id
from evidence_gate.app.middleware.security_headers import SecurityHeadersMiddleware


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CounterStore] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use (defaults to the global instance)
        store: Counter store for the rate limiter (defaults to the store
            selected by settings)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    # Setup logging
    setup_logging(settings)
    logger = get_logger(__name__)

    policies = load_policies(settings)
    if store is None:
        store = create_counter_store(settings)
    limiter = RateLimiter(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Release the counter store on shutdown."""
        logger.info(
            "Application startup complete",
            extra={
                "rate_limit_enabled": settings.rate_limit_enabled,
                "rate_limit_backend": type(limiter.store).__name__,
                "debug_mode": settings.debug,
            },
        )
        yield
        await limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Evidence Gate",
        description="Rate limiting gate for the evidence management API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.rate_limiter = limiter
    app.state.rate_limit_policies = policies

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        policies=policies,
        settings=settings,
    )

    # Security headers wrap the rate limiter so 429s carry them too
    if settings.security_headers_enabled:
        app.add_middleware(SecurityHeadersMiddleware)

    # Request ID middleware (outermost - available to every log line below it)
    app.add_middleware(RequestIdMiddleware)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with rate limit backend and policy summary."""
        backend = "redis" if isinstance(limiter.store, RedisCounterStore) else "memory"
        return {
            "status": "ok",
            "rate_limit": {
                "enabled": settings.rate_limit_enabled,
                "backend": backend,
                "policies": {
                    name: {
                        "window_ms": policy.window_ms,
                        "max_requests": policy.max_requests,
                    }
                    for name, policy in policies.items()
                },
            },
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return build_rejection_response(exc.result)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "path": request.url.path,
                "method": request.method,
            },
        )

        content: dict[str, Any] = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
