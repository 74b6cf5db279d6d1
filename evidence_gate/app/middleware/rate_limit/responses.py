"""Rate limit response shaping."""

from starlette.responses import JSONResponse, Response

from evidence_gate.app.middleware.rate_limit.models import RateLimitResult

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"
RESET_HEADER = "X-RateLimit-Reset"
RETRY_AFTER_HEADER = "Retry-After"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Informational quota headers for a decision."""
    return {
        LIMIT_HEADER: str(result.limit),
        REMAINING_HEADER: str(result.remaining),
        RESET_HEADER: str(result.reset_seconds),
    }


def build_rejection_response(result: RateLimitResult) -> JSONResponse:
    """Build the 429 response for a rejected request."""
    headers = rate_limit_headers(result)
    headers[RETRY_AFTER_HEADER] = str(result.retry_after)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "message": "Rate limit exceeded. Please try again later.",
            "retryAfter": result.retry_after,
        },
        headers=headers,
    )


def apply_rate_limit_headers(response: Response, result: RateLimitResult) -> Response:
    """Attach quota headers to an admitted response.

    Headers the handler already set are left untouched.
    """
    for name, value in rate_limit_headers(result).items():
        response.headers.setdefault(name, value)
    return response
