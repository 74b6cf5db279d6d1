"""Utility functions for wrapping request handlers."""

from typing import Any

from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


def find_request(args: tuple, kwargs: dict) -> Request:
    """Locate the Request among a handler's call arguments.

    FastAPI passes path operation parameters as keywords, plain Starlette
    endpoints receive the request positionally.

    Raises:
        TypeError: If the handler was not called with a Request
    """
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for arg in args:
        if isinstance(arg, Request):
            return arg
    raise TypeError(
        "wrapped handler must accept the Request as a 'request' parameter"
    )


def ensure_response(result: Any) -> Response:
    """Return result unchanged if it is a Response, else JSON-encode it.

    Examples:
        >>> ensure_response({"ok": True}).status_code
        200
    """
    if isinstance(result, Response):
        return result
    return JSONResponse(content=jsonable_encoder(result))
